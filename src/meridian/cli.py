# src/meridian/cli.py
import argparse
import json
import signal
import threading
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from meridian.config.bot_config_store import list_configs, load_config
from meridian.config.settings import Settings
from meridian.errors import ConfigurationError
from meridian.persistence.db import create_db_engine, create_session_factory, init_db
from meridian.providers.venue import BalanceInfo
from meridian.service.bot_builder import ConfigBuilder
from meridian.service.bot_service import BotService
from meridian.service.profiles import PRESETS
from meridian.state.trade_state import load_state, save_state
from meridian.strategy.engine import StrategyEngine
from meridian.utils.bot_config import StrategyConfig
from meridian.utils.logging_config import setup_logging


def _parse_override(raw: str) -> tuple[str, str]:
    if "=" not in raw:
        raise argparse.ArgumentTypeError(f"override must look like field=value, got {raw!r}")
    name, value = raw.split("=", 1)
    return name.strip(), value.strip()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="meridian", description="Spot accumulation/distribution bot.")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one or more instances until interrupted.")
    run.add_argument("--instance", action="append", default=[], help="Saved instance id (repeatable).")
    run.add_argument("--symbol", help="Pair for a new instance, e.g. BNBUSDT.")
    run.add_argument("--base", help="Base asset for a new instance.")
    run.add_argument("--quote", default="USDT", help="Quote asset for a new instance.")
    run.add_argument("--instance-id", help="Id for a new instance.")
    run.add_argument("--wallet", default=None, help="Wallet id shared by instances on one account.")
    run.add_argument("--preset", help="Preset to apply to a new instance.")
    run.add_argument("--set", dest="overrides", type=_parse_override, action="append", default=[],
                     help="Config override field=value (repeatable).")
    run.add_argument("--live", action="store_true", help="Trade real funds instead of DRY_RUN.")
    run.add_argument("--paper-quote", type=Decimal, help="Starting quote balance for DRY_RUN.")
    run.add_argument("--paper-base", type=Decimal, default=Decimal("0"), help="Starting base balance for DRY_RUN.")
    run.add_argument("--paper-gas", type=Decimal, default=Decimal("1"), help="Starting native gas balance for DRY_RUN.")

    sub.add_parser("presets", help="List the named presets.")
    sub.add_parser("instances", help="List saved instance configs.")

    reset = sub.add_parser("reset", help="Clear a latched circuit breaker.")
    reset.add_argument("instance")

    show = sub.add_parser("show-state", help="Print the persisted state of an instance.")
    show.add_argument("instance")

    return parser


# =========================
# Commands
# =========================
def _config_for_new_instance(args) -> StrategyConfig:
    if not args.symbol or not args.base:
        raise ConfigurationError("--symbol and --base are required for a new instance")
    builder = ConfigBuilder().with_pair(args.symbol, args.base, args.quote)
    if args.instance_id:
        builder.with_instance(args.instance_id)
    if args.preset:
        builder.with_preset(args.preset)
    overrides = dict(args.overrides)
    overrides["trading_mode"] = "live" if args.live else "dry_run"
    if args.wallet:
        overrides["wallet_id"] = args.wallet
    return builder.with_overrides(**overrides).with_defaults().build()


def cmd_run(args, settings: Settings) -> int:
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    service = BotService(settings, session_factory=create_session_factory(engine))

    configs = []
    for instance_id in args.instance:
        config = load_config(instance_id, settings.config_dir)
        if config is None:
            raise ConfigurationError(f"No saved config for {instance_id}")
        configs.append(config)
    if args.symbol:
        configs.append(_config_for_new_instance(args))
    if not configs:
        raise ConfigurationError("Nothing to run: pass --instance or --symbol/--base")

    paper = None
    if args.paper_quote is not None:
        paper = BalanceInfo(base=args.paper_base, quote=args.paper_quote, native_for_gas=args.paper_gas)

    for config in configs:
        service.start_instance(config, paper_balances=paper)

    stop = threading.Event()

    def _on_signal(signum, frame):
        logger.warning(f"Signal {signum} received. Stopping all instances...")
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    while not stop.is_set() and service.running:
        stop.wait(1.0)

    service.stop_all()
    return 0


def cmd_presets(args, settings: Settings) -> int:
    for name, preset in PRESETS.items():
        print(f"{name} (v{preset.version}) - {preset.description}")
        for field, value in sorted(preset.overrides.items()):
            print(f"    {field} = {value}")
    return 0


def cmd_instances(args, settings: Settings) -> int:
    for instance_id in list_configs(settings.config_dir):
        state = load_state(instance_id, settings.state_dir)
        status = "no state" if state is None else ("PAUSED" if state.paused else state.last_action)
        print(f"{instance_id}: {status}")
    return 0


def cmd_reset(args, settings: Settings) -> int:
    state = load_state(args.instance, settings.state_dir)
    if state is None:
        print(f"No saved state for {args.instance}")
        return 1
    StrategyEngine.reset(state)
    save_state(state, settings.state_dir)
    print(f"{state.instance_id}: paused={state.paused} failures={state.consecutive_failures}")
    return 0


def cmd_show_state(args, settings: Settings) -> int:
    state = load_state(args.instance, settings.state_dir)
    if state is None:
        print(f"No saved state for {args.instance}")
        return 1
    print(json.dumps(state.to_dict(), indent=2, sort_keys=True))
    return 0


COMMANDS = {
    "run": cmd_run,
    "presets": cmd_presets,
    "instances": cmd_instances,
    "reset": cmd_reset,
    "show-state": cmd_show_state,
}


def main(argv: list[str] | None = None) -> int:
    """
    Application entrypoint.
    Responsibilities:
    - Load environment variables
    - Setup logging
    - Dispatch the subcommand
    """
    args = build_parser().parse_args(argv)

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=True)
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}")
        return 2

    setup_logging(settings.log_dir, args.log_level)
    logger.debug(f"Settings: {settings.redacted()}")

    try:
        return COMMANDS[args.command](args, settings)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e.message}")
        return 2
    except RuntimeError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
