"""
CLI for winecellar.

Provides the `winecellar` command with subcommands:
- init: Create a template winecellar.toml
- prepare: Provision and reconcile a unit, print its launch plan
- info: Show cached artifacts and helper tools
- sweep: Terminate wine processes left running in a prefix

Usage:
    winecellar init
    winecellar prepare mygame
    winecellar prepare mygame --config ~/games/winecellar.toml --json
    winecellar info --json
    winecellar sweep mygame
"""

import argparse
import json
import logging
import shlex
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .config.parser import CONFIG_FILE_NAME, discover_config, load_config
from .config.settings import Settings, is_debug
from .config.types import ManifestConfig
from .errors import ConfigError

logger = logging.getLogger("winecellar.cli")


def main(args: Optional[List[str]] = None) -> int:
    """Main entry point for winecellar CLI."""
    parser = argparse.ArgumentParser(
        prog="winecellar",
        description="Reproducible, isolated wine prefixes with cached runtimes and libraries",
    )
    parser.add_argument(
        "--version", action="version", version=f"winecellar {__version__}"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging (same as WINECELLAR_DEBUG=1)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Create a template winecellar.toml",
        description="Write a template winecellar.toml into the current directory",
    )
    init_parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Overwrite existing config file",
    )

    # prepare command
    prepare_parser = subparsers.add_parser(
        "prepare",
        help="Provision and reconcile a unit",
        description="Fetch the unit's runtime and libraries, reconcile its prefix and print the launch plan",
    )
    prepare_parser.add_argument("unit", type=str, help="Unit name from [units.<name>]")
    prepare_parser.add_argument(
        "--config", "-c",
        type=str,
        help=f"Path to config file (default: ./{CONFIG_FILE_NAME})",
    )
    prepare_parser.add_argument(
        "--json",
        action="store_true",
        help="Output the launch plan as JSON",
    )

    # info command
    info_parser = subparsers.add_parser(
        "info",
        help="Show cached artifacts",
        description="List cached artifact versions, latest aliases and helper tools",
    )
    info_parser.add_argument(
        "--config", "-c",
        type=str,
        help="Path to config file (its [paths].home is honored)",
    )
    info_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )

    # sweep command
    sweep_parser = subparsers.add_parser(
        "sweep",
        help="Terminate wine processes of a prefix",
        description="Terminate every process running with WINEPREFIX set to the given prefix",
    )
    sweep_parser.add_argument("prefix", type=str, help="Prefix name (or a path to a prefix)")
    sweep_parser.add_argument(
        "--config", "-c",
        type=str,
        help="Path to config file (its [paths].home is honored)",
    )

    parsed = parser.parse_args(args)

    logging.basicConfig(
        level=logging.DEBUG if parsed.verbose or is_debug() else logging.WARNING,
        format="[winecellar] %(levelname)s %(name)s: %(message)s",
    )

    if parsed.command is None:
        parser.print_help()
        return 0

    try:
        if parsed.command == "init":
            return cmd_init(parsed)
        elif parsed.command == "prepare":
            return cmd_prepare(parsed)
        elif parsed.command == "info":
            return cmd_info(parsed)
        elif parsed.command == "sweep":
            return cmd_sweep(parsed)
        else:
            parser.print_help()
            return 1
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130
    except Exception as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


DEFAULT_CONFIG = """\
# winecellar.toml - Units and their isolated wine prefixes

[paths]
# home = "~/.local/share/winecellar"

[env]
# Defaults for every unit; unit env wins on collisions
DXVK_LOG_LEVEL = "none"

[defaults]
runtime = { kind = "system" }

[units.example]
name = "Example"
prefix = "example"
command = ["C:\\\\Program Files\\\\Example\\\\example.exe"]
# cd = "~/Games/example"
# wrapper = ["gamemoderun"]
winetricks = ["vcrun2015"]
before = []

[units.example.libraries]
dxvk = "latest"
# vkd3d-proton = "v2.13"

[units.example.mounts]
# d = "~/Games"

[units.example.env]
# WINEESYNC = "1"
"""


def _load_manifest(path: Optional[str], required: bool) -> ManifestConfig:
    if path:
        return load_config(Path(path).expanduser())
    manifest = discover_config(Path.cwd())
    if manifest is None:
        if required:
            raise ConfigError(f"No {CONFIG_FILE_NAME} in {Path.cwd()} (use --config)", phase="config")
        return ManifestConfig()
    return manifest


def cmd_init(args) -> int:
    """Handle init command."""
    config_path = Path.cwd() / CONFIG_FILE_NAME

    if config_path.exists() and not args.force:
        print(f"Config file already exists: {config_path}", file=sys.stderr)
        print("Use --force to overwrite", file=sys.stderr)
        return 1

    config_path.write_text(DEFAULT_CONFIG)
    print(f"Created {config_path}")
    return 0


def cmd_prepare(args) -> int:
    """Handle prepare command."""
    from .pipeline import ReconciliationPipeline

    manifest = _load_manifest(args.config, required=True)
    # Keep stdout clean for the JSON document
    log = (lambda msg: print(msg, file=sys.stderr)) if args.json else print
    pipeline = ReconciliationPipeline(Settings.from_env(), manifest, log=log)
    plan = pipeline.prepare(args.unit)

    if args.json:
        print(json.dumps(plan.to_dict(), indent=2))
        return 0

    print()
    print(f"Unit:    {plan.name} ({plan.unit})")
    print(f"Prefix:  {plan.handle.root}")
    print(f"Wine:    {plan.runtime.wine}" + (f" ({plan.runtime.version})" if plan.runtime.version else ""))
    for name, artifact in plan.artifacts.items():
        print(f"Library: {name} {artifact.version} [{plan.installs[name].value}]")
    print(f"Cwd:     {plan.cwd}")
    print("Command:")
    env = " ".join(f"{k}={shlex.quote(v)}" for k, v in sorted(plan.env.items()))
    print(f"  {env} {' '.join(shlex.quote(a) for a in plan.argv)}")
    return 0


def cmd_info(args) -> int:
    """Handle info command."""
    from .pipeline import ReconciliationPipeline
    from .registry import list_artifacts

    manifest = _load_manifest(args.config, required=False)
    pipeline = ReconciliationPipeline(Settings.from_env(), manifest)
    cache = pipeline.cache()
    cached = cache.list_cached()
    tools = cache.list_tools()

    if args.json:
        print(json.dumps({
            "home": str(pipeline.paths.home),
            "artifacts": cached,
            "tools": tools,
            "registry": list_artifacts(),
        }, indent=2))
        return 0

    print(f"Home: {pipeline.paths.home}")
    print()
    if not cached:
        print("No cached artifacts")
    for entry in cached:
        latest = f" (latest -> {entry['latest']})" if entry["latest"] else ""
        print(f"{entry['key']}{latest}")
        for version in entry["versions"]:
            print(f"  {version}")
    print()
    print(f"Tools: {', '.join(tools) if tools else 'none'}")
    print()
    print("Available artifacts:")
    for name, source in list_artifacts().items():
        print(f"  {name:<16} {source}")
    return 0


def cmd_sweep(args) -> int:
    """Handle sweep command."""
    from .environment.processes import sweep_prefix
    from .pipeline import ReconciliationPipeline

    candidate = Path(args.prefix).expanduser()
    if "/" in args.prefix and candidate.is_dir():
        prefix = candidate
    else:
        manifest = _load_manifest(args.config, required=False)
        prefix = ReconciliationPipeline(Settings.from_env(), manifest).handle(args.prefix).root

    count = sweep_prefix(prefix)
    print(f"Terminated {count} process(es) in {prefix}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
