import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from meridian.service.bot_state import StrategyState

STATE_DIR = Path("state")


def _ensure_state_dir(state_dir: Path) -> None:
    state_dir.mkdir(parents=True, exist_ok=True)


def state_path(instance_id: str, state_dir: Path = STATE_DIR) -> Path:
    return Path(state_dir) / f"{instance_id}.json"


def save_state(state: StrategyState, state_dir: Path = STATE_DIR) -> Path:
    state_dir = Path(state_dir)
    _ensure_state_dir(state_dir)
    state.updated_at = datetime.now(timezone.utc)
    path = state_path(state.instance_id, state_dir)
    tmp = path.with_suffix(".json.tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(state.to_dict(), f, indent=2, sort_keys=True)
    tmp.replace(path)
    return path


def load_state(instance_id: str, state_dir: Path = STATE_DIR) -> Optional[StrategyState]:
    path = state_path(instance_id, state_dir)
    if not path.exists():
        return None
    with path.open(encoding="utf-8") as f:
        return StrategyState.from_dict(json.load(f))


def clear_state(instance_id: str, state_dir: Path = STATE_DIR) -> None:
    path = state_path(instance_id, state_dir)
    if path.exists():
        path.unlink()
