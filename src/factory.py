import logging
from collections.abc import Callable

from config import LiveProxyConfig
from adapters.live_upstream import LiveUpstreamSession
from adapters.proxy_client import ProxyClient
from adapters.websocket_server import ProxyServer
from domain.playback import PlaybackController
from domain.voice_client import Renderer, VoiceClient
from ports.upstream import UpstreamPort

logger = logging.getLogger(__name__)


def create_upstream_factory(config: LiveProxyConfig) -> Callable[[], UpstreamPort]:
    api_key = config.resolve_api_key()

    def create_upstream() -> UpstreamPort:
        return LiveUpstreamSession(
            api_key=api_key,
            model=config.model,
            instructions_path=config.instructions_path,
            url=config.upstream_url,
            sample_rate=config.response_sample_rate,
            open_timeout=config.open_timeout,
        )

    return create_upstream


def create_server(config: LiveProxyConfig) -> ProxyServer:
    return ProxyServer(
        upstream_factory=create_upstream_factory(config),
        host=config.host,
        port=config.port,
        path=config.ws_path,
    )


def create_voice_client(config: LiveProxyConfig, render: Renderer | None = None) -> VoiceClient:
    from adapters.sounddevice_audio import SounddeviceCapture, SounddeviceSink

    capture = SounddeviceCapture(
        device=config.capture_device,
        sample_rate=config.sample_rate,
        chunk_duration_ms=config.chunk_duration_ms,
    )
    playback = PlaybackController(
        sink=SounddeviceSink(device=config.playback_device),
        sample_rate=config.playback_sample_rate,
    )
    return VoiceClient(
        transport=ProxyClient(url=config.proxy_url),
        capture=capture,
        playback=playback,
        render=render,
        language=config.language,
    )
