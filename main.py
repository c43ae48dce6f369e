import argparse
import asyncio
import importlib
import json
import pkgutil
import sys
from pathlib import Path

from pydantic import ValidationError

import services.error  # installs global uncaught-exception hook
import services.logger as log
import services.util as u
import services.config_io as config_io
from services.bridge_registry import BridgeRegistry
from services.config_schema import AppConfig
from services.error import ConfigError
from services.loop_guard import LoopGuard
from services.message import Platform
from services.router import Router

import drivers as _drivers_pkg

l = log.get_logger()


def _load_all_drivers() -> None:
    """Import every module in the ``drivers/`` package.

    Each driver module calls ``drivers.registry.register()`` at import time,
    so this one pass is enough to populate the registry.  The ``registry``
    module itself is skipped to avoid a circular bootstrap.
    """
    for _, mod_name, _ in pkgutil.iter_modules(_drivers_pkg.__path__):
        if mod_name != "registry":
            importlib.import_module(f"drivers.{mod_name}")


def validate_driver_configs(raw: dict) -> dict[Platform, object]:
    """Validate the config section of every platform present in *raw*.

    Raises ``ConfigError`` listing every invalid section.
    """
    _load_all_drivers()
    from drivers.registry import all_drivers

    validated: dict[Platform, object] = {}
    errors: list[str] = []
    for platform, (config_cls, _) in all_drivers().items():
        section = raw.get(platform.value)
        if section is None:
            continue
        try:
            validated[platform] = config_cls.model_validate(section)
        except ValidationError as exc:
            errors.append(f"Config error in {platform}:\n{exc}")
    if errors:
        raise ConfigError("\n".join(errors))
    return validated


def build_router(raw: dict, driver_configs: dict[Platform, object] | None = None) -> Router:
    """Build the bridge registry, loop guard and router from a raw config dict."""
    try:
        app_cfg = AppConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Config error:\n{exc}") from exc

    registry = BridgeRegistry.from_config(app_cfg.bridges)
    if not registry.bridges:
        l.warning("No bridges configured; every message will be dropped")

    bot_ids: dict[Platform, list[str]] = {p: list(ids) for p, ids in app_cfg.loop_guard.bot_user_ids.items()}
    cometchat_cfg = (driver_configs or {}).get(Platform.COMETCHAT)
    if cometchat_cfg is not None:
        # The CometChat bot posts as a regular user; its uid is our identity there
        bot_ids.setdefault(Platform.COMETCHAT, []).append(cometchat_cfg.bot_uid)

    guard = LoopGuard(app_cfg.loop_guard.name_fragments, bot_ids)
    return Router(registry, loop_guard=guard)


def _read_config(path: Path | None) -> dict:
    if path is None:
        path = config_io.find_config(Path(u.get_data_path()))
        if path is None:
            raise ConfigError(
                f"No config file found in: {u.get_data_path()} (tried config.json / .yaml / .toml)"
            )
    l.info(f"Loading config from: {path}")
    try:
        return config_io.load_config(path)
    except Exception as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e


def cmd_convert(src: str, dst: str) -> None:
    src_path = Path(src)
    dst_path = Path(dst)

    if not src_path.is_file():
        print(f"Error: source file not found: {src_path}", file=sys.stderr)
        sys.exit(1)

    try:
        data = config_io.load_config(src_path)
    except Exception as e:
        print(f"Error reading {src_path}: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        config_io.save_config(data, dst_path)
    except Exception as e:
        print(f"Error writing {dst_path}: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Converted {src_path} → {dst_path}")


def cmd_check(path: str | None) -> None:
    try:
        raw = _read_config(Path(path) if path else None)
        log.register_sensitive(config_io.sensitive_values(raw))
        driver_configs = validate_driver_configs(raw)
        router = build_router(raw, driver_configs)
    except Exception as e:
        print(f"Config invalid: {e}", file=sys.stderr)
        sys.exit(1)

    summary = router.registry.summary()
    summary["drivers"] = sorted(str(p) for p in driver_configs)
    print(json.dumps(summary, ensure_ascii=False, indent=2))


async def main():
    l.info("cometbridge starting…")

    try:
        raw = _read_config(None)
        log.register_sensitive(config_io.sensitive_values(raw))
        driver_configs = validate_driver_configs(raw)
        router = build_router(raw, driver_configs)
    except ConfigError as e:
        l.critical(str(e))
        return

    from drivers.registry import all_drivers
    registry = all_drivers()

    for bridge in router.registry.bridges:
        missing = [str(p) for p in bridge.platforms if p not in driver_configs]
        if missing:
            l.warning(f"Bridge '{bridge.id}' uses unconfigured platform(s): {', '.join(missing)}")

    def _on_task_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            l.error(f"Driver '{task.get_name()}' crashed: {exc}")

    driver_tasks: list[asyncio.Task] = []
    for platform, cfg in driver_configs.items():
        _, driver_cls = registry[platform]
        drv = driver_cls(cfg, router)
        task = asyncio.create_task(drv.start(), name=str(platform))
        task.add_done_callback(_on_task_done)
        driver_tasks.append(task)
        l.info(f"Registered driver: {platform}")

    if not driver_tasks:
        l.error("No drivers configured, nothing to do. Exiting.")
        return

    try:
        results = await asyncio.gather(*driver_tasks, return_exceptions=True)
        for task, result in zip(driver_tasks, results):
            if isinstance(result, Exception):
                l.error(f"Driver '{task.get_name()}' exited with error: {result}")
    except asyncio.CancelledError:
        l.info("cometbridge shutting down…")
        for task in driver_tasks:
            task.cancel()
        await asyncio.gather(*driver_tasks, return_exceptions=True)
        l.info("cometbridge stopped.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(prog="cometbridge", description="CometChat / Discord / Telegram relay")
    subparsers = parser.add_subparsers(dest="command")

    conv = subparsers.add_parser("convert", help="Convert a config file between formats (json/yaml/toml)")
    conv.add_argument("src", help="Source config file (e.g. config.json)")
    conv.add_argument("dst", help="Destination config file (e.g. config.yaml)")

    check = subparsers.add_parser("check", help="Validate a config file and print the bridge table")
    check.add_argument("path", nargs="?", help="Config file (default: first config.* in the data path)")

    args = parser.parse_args()

    if args.command == "convert":
        cmd_convert(args.src, args.dst)
        sys.exit(0)

    if args.command == "check":
        cmd_check(args.path)
        sys.exit(0)

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
