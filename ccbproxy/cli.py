from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional

import httpx
from pydantic import ValidationError

from ccbproxy.proxy.config_manager import ProviderRegistry, get_active
from ccbproxy.proxy.errors import ConfigError, GatewayError
from ccbproxy.proxy.lifecycle import LifecycleController
from ccbproxy.proxy.logging_config import setup_logging
from ccbproxy.proxy.models import ManagedModeConfig

DEFAULT_PROXY_HOST = "127.0.0.1"


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ccbproxy",
        description="Run the managed-mode gateway that serves Claude clients from any configured provider",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to managed-mode-config.json (default: $CCB_CONFIG_PATH or ~/.ccb/managed-mode-config.json)",
    )
    parser.add_argument(
        "--host",
        default=DEFAULT_PROXY_HOST,
        help=f"Gateway bind host (default: {DEFAULT_PROXY_HOST})",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Gateway bind port (default: the port in the config file)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["debug", "info", "warn", "error"],
        help="Log level (default: the level in the config file)",
    )
    parser.add_argument(
        "--check",
        default=False,
        action="store_true",
        help="Validate the config file and exit",
    )
    parser.add_argument(
        "--print-env",
        default=False,
        action="store_true",
        help="Print shell exports that point a Claude client at the gateway",
    )
    parser.add_argument(
        "--status",
        default=False,
        action="store_true",
        help="Probe /health of a running gateway and print the result",
    )
    return parser.parse_args(argv)


def _ensure_proxy_running(
    url: str, attempts: int = 5, delay: float = 0.6, timeout: float = 1.0
) -> Dict:
    for _ in range(attempts):
        try:
            response = httpx.get(url, timeout=timeout)
        except httpx.HTTPError:
            response = None
        if response is not None and response.status_code == 200:
            return response.json()
        time.sleep(delay)
    raise RuntimeError(f"Gateway not reachable at {url}")


def _check(config: ManagedModeConfig, registry: ProviderRegistry) -> int:
    print(f"[ccbproxy] config: {registry.config_path}")
    print(f"[ccbproxy] managed mode: {'enabled' if config.enabled else 'disabled'}, port {config.port}")
    for provider in config.providers:
        marker = "*" if provider.id == config.current_provider_id else " "
        state = "enabled" if provider.enabled else "disabled"
        print(
            f"  {marker} {provider.name} [{provider.type}/{provider.transformer_id}] "
            f"{provider.base_url} key={provider.masked_api_key} ({state})"
        )
    try:
        provider = get_active(config)
    except GatewayError as exc:
        print(f"[ccbproxy] {exc.message}", file=sys.stderr)
        return 1
    print(f"[ccbproxy] active provider: {provider.name}")
    return 0


def _print_env(config: ManagedModeConfig, host: str) -> None:
    print(f"export ANTHROPIC_BASE_URL=http://{host}:{config.port}")
    print(f"export ANTHROPIC_AUTH_TOKEN={config.access_token or 'ccbproxy'}")


async def _serve(controller: LifecycleController, config: ManagedModeConfig) -> int:
    try:
        await controller.start(config)
    except GatewayError as exc:
        print(f"[ccbproxy] {exc.message}", file=sys.stderr)
        return 1
    print(f"[ccbproxy] Gateway running at {controller.url}")

    loop = asyncio.get_running_loop()
    actions: "asyncio.Queue[str]" = asyncio.Queue()
    for name, action in (("SIGINT", "stop"), ("SIGTERM", "stop"), ("SIGHUP", "reload")):
        signum = getattr(signal, name, None)
        if signum is None:
            continue
        try:
            loop.add_signal_handler(signum, actions.put_nowait, action)
        except NotImplementedError:
            # Windows event loops: Ctrl+C still arrives as KeyboardInterrupt
            pass

    try:
        while True:
            action = await actions.get()
            if action == "stop":
                break
            try:
                await controller.reload()
            except GatewayError as exc:
                print(f"[ccbproxy] reload failed: {exc.message}", file=sys.stderr)
                return 1
            print(f"[ccbproxy] Gateway reloaded at {controller.url}")
    finally:
        await controller.stop()
    return 0


def _override_port(config: ManagedModeConfig, port: int) -> ManagedModeConfig:
    data = config.model_dump()
    data["port"] = port
    try:
        return ManagedModeConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid --port {port}: must be between 1024 and 65535") from exc


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    registry = ProviderRegistry(args.config)
    try:
        config = registry.load()
    except GatewayError as exc:
        print(f"[ccbproxy] {exc.message}", file=sys.stderr)
        return 1
    if args.port is not None:
        try:
            config = _override_port(config, args.port)
        except ConfigError as exc:
            print(f"[ccbproxy] {exc.message}", file=sys.stderr)
            return 1

    if args.status:
        url = f"http://{args.host}:{config.port}/health"
        try:
            health = _ensure_proxy_running(url)
        except RuntimeError as exc:
            print(f"[ccbproxy] {exc}", file=sys.stderr)
            return 1
        print(json.dumps(health, indent=2))
        return 0

    if args.check:
        return _check(config, registry)

    if args.print_env:
        _print_env(config, args.host)
        return 0

    setup_logging(config.logging, level=args.log_level)

    if not config.enabled:
        print("[ccbproxy] Managed mode is disabled in the config; nothing to start")
        return 0
    if not config.providers:
        print("[ccbproxy] No API providers configured; add one before starting the gateway", file=sys.stderr)
        return 1

    controller = LifecycleController(registry=registry, host=args.host)
    print(f"[ccbproxy] Starting gateway at http://{args.host}:{config.port}")
    try:
        return asyncio.run(_serve(controller, config))
    except KeyboardInterrupt:  # pragma: no cover - interactive session
        return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
