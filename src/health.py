import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Literal
from urllib.parse import urlparse

from config import LiveProxyConfig

logger = logging.getLogger(__name__)

CRITICAL_CHECKS = {"api_key", "instructions", "audio_device"}


@dataclass
class HealthCheckResult:
    name: str
    passed: bool
    detail: str


def run_startup_checks(
    config: LiveProxyConfig,
    mode: Literal["serve", "talk"] = "serve",
) -> list[HealthCheckResult]:
    if mode == "serve":
        results = [
            _check_api_key(config),
            _check_instructions(config),
            _check_websocket_url("upstream_url", config.upstream_url),
        ]
    else:
        results = [
            _check_audio_device(config),
            _check_websocket_url("proxy_url", config.proxy_url),
        ]

    passed = sum(1 for r in results if r.passed)

    logger.info("Health check: %d/%d passed", passed, len(results))
    for result in results:
        level = logging.INFO if result.passed else logging.WARNING
        symbol = "OK" if result.passed else "FAIL"
        logger.log(level, "  [%s] %s: %s", symbol, result.name, result.detail)

    return results


def has_critical_failures(results: list[HealthCheckResult]) -> bool:
    return any(not r.passed and r.name in CRITICAL_CHECKS for r in results)


def _check_api_key(config: LiveProxyConfig) -> HealthCheckResult:
    name = "api_key"
    if config.resolve_api_key():
        source = "environment" if config.api_key.strip() else config.api_key_file
        return HealthCheckResult(name=name, passed=True, detail=f"Loaded from {source}")
    return HealthCheckResult(
        name=name,
        passed=False,
        detail=f"Missing (LIVE_PROXY_API_KEY or {config.api_key_file or 'LIVE_PROXY_API_KEY_FILE'})",
    )


def _check_instructions(config: LiveProxyConfig) -> HealthCheckResult:
    name = "instructions"
    path = Path(config.instructions_path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        return HealthCheckResult(name=name, passed=False, detail=f"{path}: {exc.strerror or exc}")
    except UnicodeDecodeError as exc:
        return HealthCheckResult(name=name, passed=False, detail=f"{path} is not UTF-8 text: {exc.reason}")
    if not text.strip():
        return HealthCheckResult(name=name, passed=False, detail=f"{path} is empty")
    return HealthCheckResult(name=name, passed=True, detail=f"{path} ({len(text)} chars)")


def _check_websocket_url(name: str, url: str) -> HealthCheckResult:
    parsed = urlparse(url)
    if parsed.scheme not in ("ws", "wss") or not parsed.netloc:
        return HealthCheckResult(name=name, passed=False, detail=f"Not a WebSocket URL: {url}")
    return HealthCheckResult(name=name, passed=True, detail=f"{parsed.scheme}://{parsed.netloc}{parsed.path}")


def _check_audio_device(config: LiveProxyConfig) -> HealthCheckResult:
    name = "audio_device"
    try:
        import sounddevice as sd

        if not config.capture_device:
            default = sd.query_devices(kind="input")
            return HealthCheckResult(name=name, passed=True, detail=f"Default input: {default['name']}")

        for dev in sd.query_devices():
            if config.capture_device.lower() in dev["name"].lower() and dev["max_input_channels"] > 0:
                return HealthCheckResult(name=name, passed=True, detail=f"Device '{config.capture_device}' found")

        default = sd.query_devices(kind="input")
        return HealthCheckResult(
            name=name,
            passed=True,
            detail=f"'{config.capture_device}' not in PortAudio (will use PIPEWIRE_NODE), default input: {default['name']}",
        )
    except Exception as exc:
        return HealthCheckResult(name=name, passed=False, detail=str(exc))
