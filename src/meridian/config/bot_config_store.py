import json
from pathlib import Path
from typing import Optional

from meridian.service.bot_builder import validate_config
from meridian.utils.bot_config import StrategyConfig, coerce_fields, config_to_dict

CONFIG_DIR = Path("configs")


def _ensure_config_dir(config_dir: Path) -> None:
    config_dir.mkdir(parents=True, exist_ok=True)


def config_path(instance_id: str, config_dir: Path = CONFIG_DIR) -> Path:
    return Path(config_dir) / f"{instance_id}.json"


def save_config(config: StrategyConfig, config_dir: Path = CONFIG_DIR) -> Path:
    config_dir = Path(config_dir)
    _ensure_config_dir(config_dir)
    path = config_path(config.instance_id, config_dir)
    with path.open("w", encoding="utf-8") as f:
        json.dump(config_to_dict(config), f, indent=2, sort_keys=True)
    return path


def load_config(instance_id: str, config_dir: Path = CONFIG_DIR) -> Optional[StrategyConfig]:
    path = config_path(instance_id, config_dir)
    if not path.exists():
        return None
    with path.open(encoding="utf-8") as f:
        data = json.load(f)
    return validate_config(StrategyConfig(**coerce_fields(data)))


def list_configs(config_dir: Path = CONFIG_DIR) -> list[str]:
    config_dir = Path(config_dir)
    if not config_dir.exists():
        return []
    return sorted(p.stem for p in config_dir.glob("*.json"))
