import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any

START_EVENT = "start"
INTERRUPT_EVENT = "interrupt"
RESPONSE_END_EVENT = "response.end"

RESPONSE_MODALITIES = ["AUDIO", "TEXT"]
RESPONSE_AUDIO_FORMAT = "pcm_s16le"
RESPONSE_SAMPLE_RATE_HZ = 16000


@dataclass(frozen=True)
class JsonMessage:
    payload: dict[str, Any]
    raw: str


@dataclass(frozen=True)
class RawAudio:
    data: bytes


WireMessage = JsonMessage | RawAudio


@dataclass(frozen=True)
class AudioInput:
    mime_type: str
    data: str


@dataclass(frozen=True)
class SessionStart:
    language: str | None = None
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InputEvent:
    event: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Interrupt:
    pass


@dataclass(frozen=True)
class ControlEvent:
    event: str


@dataclass(frozen=True)
class UnknownFrame:
    payload: dict[str, Any]


ClientFrame = AudioInput | SessionStart | InputEvent | Interrupt | ControlEvent | UnknownFrame


@dataclass(frozen=True)
class Transcript:
    text: str
    is_partial: bool = False


@dataclass(frozen=True)
class ResponseText:
    text: str


@dataclass(frozen=True)
class ResponseAudio:
    data: bytes
    sample_rate: int = RESPONSE_SAMPLE_RATE_HZ


@dataclass(frozen=True)
class ResponseEnd:
    pass


@dataclass(frozen=True)
class ErrorFrame:
    message: str


DownstreamFrame = Transcript | ResponseText | ResponseAudio | ResponseEnd | ControlEvent | ErrorFrame


def decode_message(raw: str | bytes) -> WireMessage:
    """Split a wire message into JSON or raw audio.

    Binary data, text that is not JSON and JSON that is not an object all fall
    back to ``RawAudio`` instead of being rejected.
    """
    if not isinstance(raw, str):
        return RawAudio(data=bytes(raw))
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return RawAudio(data=raw.encode("utf-8"))
    if not isinstance(payload, dict):
        return RawAudio(data=raw.encode("utf-8"))
    return JsonMessage(payload=payload, raw=raw)


def parse_client_frame(message: JsonMessage) -> ClientFrame:
    payload = message.payload

    control = payload.get("control")
    if isinstance(control, dict):
        event = control.get("event")
        if event == INTERRUPT_EVENT:
            return Interrupt()
        return ControlEvent(event=str(event or ""))

    input_ = payload.get("input")
    if isinstance(input_, dict):
        audio = input_.get("audio")
        if isinstance(audio, dict):
            return AudioInput(
                mime_type=str(audio.get("mimeType", "")),
                data=str(audio.get("data", "")),
            )
        event = input_.get("event")
        if isinstance(event, str):
            params = {key: value for key, value in input_.items() if key != "event"}
            if event == START_EVENT:
                return SessionStart(language=params.get("language"), params=params)
            return InputEvent(event=event, params=params)

    return UnknownFrame(payload=payload)


def parse_downstream_frames(
    message: WireMessage,
    sample_rate: int = RESPONSE_SAMPLE_RATE_HZ,
) -> tuple[DownstreamFrame, ...]:
    if isinstance(message, RawAudio):
        return (ResponseAudio(data=message.data, sample_rate=sample_rate),)

    payload = message.payload
    frames: list[DownstreamFrame] = []

    partial = payload.get("partialTranscript")
    if isinstance(partial, str) and partial:
        frames.append(Transcript(text=partial, is_partial=True))

    transcript = payload.get("transcript")
    if isinstance(transcript, str) and transcript:
        frames.append(Transcript(text=transcript))

    response_text = payload.get("responseText")
    if isinstance(response_text, str) and response_text:
        frames.append(ResponseText(text=response_text))

    audio_chunk = payload.get("audioChunk")
    if isinstance(audio_chunk, str) and audio_chunk:
        data = _decode_base64(audio_chunk)
        if data is not None:
            rate = payload.get("sampleRateHertz")
            if not isinstance(rate, int):
                rate = sample_rate
            frames.append(ResponseAudio(data=data, sample_rate=rate))

    event = payload.get("event")
    if event == RESPONSE_END_EVENT:
        frames.append(ResponseEnd())
    elif isinstance(event, str) and event:
        frames.append(ControlEvent(event=event))

    error = payload.get("error")
    if error:
        frames.append(ErrorFrame(message=error if isinstance(error, str) else json.dumps(error)))

    return tuple(frames)


def _decode_base64(value: str) -> bytes | None:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None


def encode_audio_input(data: bytes, mime_type: str) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return json.dumps({"input": {"audio": {"mimeType": mime_type, "data": encoded}}})


def encode_session_start(language: str | None) -> str:
    return json.dumps({"input": {"event": START_EVENT, "language": language}})


def encode_interrupt() -> str:
    return json.dumps({"control": {"event": INTERRUPT_EVENT}})


def encode_error(message: str) -> str:
    return json.dumps({"error": message})


def build_setup_message(
    model: str,
    instructions: str,
    sample_rate: int = RESPONSE_SAMPLE_RATE_HZ,
) -> dict[str, Any]:
    return {
        "setup": {
            "model": model,
            "instructions": instructions,
            "response": {
                "modalities": list(RESPONSE_MODALITIES),
                "audio": {
                    "format": RESPONSE_AUDIO_FORMAT,
                    "sampleRateHertz": sample_rate,
                },
            },
        }
    }
