from pydantic_settings import BaseSettings, SettingsConfigDict


class LiveProxyConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LIVE_PROXY_")

    host: str = "0.0.0.0"
    port: int = 8080
    ws_path: str = "/ws"

    api_key: str = ""
    api_key_file: str = ""

    model: str = "models/gemini-2.0-flash-live-001"
    upstream_url: str = "wss://generativelanguage.googleapis.com/v1beta/live:connect"
    instructions_path: str = "prompts/system.txt"
    response_sample_rate: int = 16000
    open_timeout: float = 10.0

    proxy_url: str = "ws://localhost:8080/ws"
    language: str = "en"
    capture_device: str = ""
    playback_device: str = ""
    sample_rate: int = 16000
    chunk_duration_ms: int = 200
    playback_sample_rate: int = 16000

    def read_secret(self, path: str) -> str:
        if not path:
            return ""
        try:
            with open(path) as f:
                return f.read().strip()
        except FileNotFoundError:
            return ""

    def resolve_api_key(self) -> str:
        return self.api_key.strip() or self.read_secret(self.api_key_file)
