"""
CLI_MAIN
========

Command-line interface for the fleet supervisor.

Commands:
    serve               Start the API server, registry and scheduler
    agents              List configured agents and their schedules
    window              Show whether an agent is inside its schedule window
    plan                Preview a randomized duration-mode day plan
    history             Show an agent's closed-out days

Usage:
    fleet serve --factory mypackage.drivers:build_components --port 8500
    fleet serve --factory mypackage.drivers:build_components --no-scheduler
    fleet agents
    fleet window alpha
    fleet plan alpha --seed 7
    fleet history alpha --json
"""

import argparse
import importlib
import json
import os
import random
import sys
from datetime import datetime, timedelta
from typing import Optional

from ..config import get_config_manager
from ..logging_config import setup_logging

FACTORY_ENV = "FLEET_COMPONENT_FACTORY"


def load_factory(spec: str):
    """Import ``"package.module:callable"``."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Factory must look like 'package.module:callable', got {spec!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attr)


# ============================================================================
# CLI COMMANDS
# ============================================================================

def cli_agents() -> list:
    """List all configured agents."""
    config = get_config_manager()
    agents = []
    for name in config.list_agents():
        cfg = config.load_agent(name)
        agents.append({
            "name": name,
            "enabled": cfg.enabled,
            "schedule": cfg.scheduler.mode if cfg.scheduler.enabled else "off",
            "auth_method": cfg.auth_method or "-",
        })
    return agents


def cli_window(name: str) -> dict:
    """Schedule window check for one agent."""
    from ..scheduler import Scheduler

    scheduler = Scheduler(registry=None, config_manager=get_config_manager())
    next_start = scheduler.next_window_start(name)
    return {
        "agent": name,
        "within_schedule": scheduler.is_within_schedule(name),
        "next_window_start": next_start.isoformat() if next_start else None,
    }


def cli_plan(name: str, seed: Optional[int] = None, wake: Optional[str] = None) -> dict:
    """Generate (but do not save) a day plan from the agent's duration config."""
    from ..scheduler import plan_breaks, parse_hhmm

    cfg = get_config_manager().load_agent(name).scheduler.duration
    rng = random.Random(seed)
    play_hours = max(1, cfg.play_hours)
    wake_tod = parse_hhmm(wake or cfg.wake_up_time or "08:00")
    start = datetime.now().replace(hour=wake_tod.hour, minute=wake_tod.minute, second=0, microsecond=0)

    breaks = plan_breaks(cfg, play_hours, rng)
    total_break = sum(b.duration_minutes for b in breaks)
    return {
        "agent": name,
        "wake": start.strftime("%H:%M"),
        "rest": (start + timedelta(hours=play_hours, minutes=total_break)).strftime("%H:%M"),
        "play_hours": play_hours,
        "breaks": [
            {
                "type": b.type,
                "start": (start + timedelta(minutes=b.offset_minutes)).strftime("%H:%M"),
                "duration": b.duration_minutes,
            }
            for b in breaks
        ],
    }


def cli_history(name: str) -> list:
    """Closed-out days for one agent."""
    from ..scheduler import StateStore

    store = StateStore(str(get_config_manager().agents_dir))
    return [entry.to_dict() for entry in store.load_history(name)]


def cli_serve(factory_spec: str, host: str, port: int, with_scheduler: bool = True) -> None:
    """Start the registry, scheduler and API server (blocks)."""
    import uvicorn

    from ..api import create_app
    from ..events import build_event_bus
    from ..registry import SupervisorRegistry
    from ..scheduler import Scheduler

    config = get_config_manager()
    events = build_event_bus(config.global_config.notifications)
    registry = SupervisorRegistry(load_factory(factory_spec), config_manager=config, events=events)

    scheduler = None
    if with_scheduler and config.global_config.scheduler.enabled:
        scheduler = Scheduler(registry, config)
        scheduler.start()

    app = create_app(registry=registry, scheduler=scheduler, config_manager=config)

    print("\nFleet Supervisor API")
    print("=" * 50)
    print(f"API:       http://{host}:{port}")
    print(f"API Docs:  http://{host}:{port}/docs")
    print(f"Agents:    {len(config.list_agents())} configured")
    print(f"Scheduler: {'Running' if scheduler else 'Disabled'}")
    print("=" * 50)

    try:
        uvicorn.run(app, host=host, port=port)
    finally:
        if scheduler is not None:
            scheduler.stop()
        registry.stop_all()
        events.close()


# ============================================================================
# MAIN
# ============================================================================

def _print(data, as_json: bool) -> None:
    if as_json:
        print(json.dumps(data, indent=2))
        return
    if isinstance(data, list):
        for item in data:
            print("  " + "  ".join(f"{k}={v}" for k, v in item.items()))
        if not data:
            print("  (none)")
    else:
        for key, value in data.items():
            if isinstance(value, list):
                print(f"{key}:")
                for item in value:
                    print("  " + "  ".join(f"{k}={v}" for k, v in item.items()))
            else:
                print(f"{key}: {value}")


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="fleet",
        description="Fleet supervisor - run, schedule and restart automated agents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", "-V", action="version", version="%(prog)s 1.0.0")
    parser.add_argument("--data-dir", help="Data directory (default: $FLEET_DATA_DIR or ./data/fleet)")
    parser.add_argument("--log-level", default=None, help="Logging level (default from config)")
    parser.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    subparsers = parser.add_subparsers(dest="command", metavar="<command>")

    serve_parser = subparsers.add_parser("serve", help="Start API server and scheduler")
    serve_parser.add_argument("--factory", default=os.environ.get(FACTORY_ENV),
                              help=f"Component factory 'module:callable' (or ${FACTORY_ENV})")
    serve_parser.add_argument("--host", default=None, help="Bind host")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port")
    serve_parser.add_argument("--no-scheduler", action="store_true", help="Do not run the scheduler")

    subparsers.add_parser("agents", help="List configured agents")

    window_parser = subparsers.add_parser("window", help="Check an agent's schedule window")
    window_parser.add_argument("name", help="Agent name")

    plan_parser = subparsers.add_parser("plan", help="Preview a duration-mode day plan")
    plan_parser.add_argument("name", help="Agent name")
    plan_parser.add_argument("--seed", type=int, default=None, help="Random seed")
    plan_parser.add_argument("--wake", default=None, help="Override wake time HH:MM")

    history_parser = subparsers.add_parser("history", help="Show closed-out days")
    history_parser.add_argument("name", help="Agent name")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    config = get_config_manager(args.data_dir)
    setup_logging(args.log_level or config.global_config.log_level)

    if args.command == "serve":
        if not args.factory:
            print(f"Error: --factory or ${FACTORY_ENV} is required")
            return 2
        api = config.global_config.api
        cli_serve(args.factory, args.host or api.host, args.port or api.port, not args.no_scheduler)
    elif args.command == "agents":
        _print(cli_agents(), args.json)
    elif args.command == "window":
        _print(cli_window(args.name), args.json)
    elif args.command == "plan":
        _print(cli_plan(args.name, args.seed, args.wake), args.json)
    elif args.command == "history":
        _print(cli_history(args.name), args.json)
    return 0


if __name__ == "__main__":
    sys.exit(main())
