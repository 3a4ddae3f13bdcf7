from __future__ import annotations

import json
import os
import signal
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Callable, Protocol
from urllib.parse import urlparse

import requests

from .logging_utils import debug_log
from .narration import SpeechOptions, VoiceOption
from .voice_defaults import DEFAULT_ENGINE_URL, DEFAULT_SPEAKER_ID

VOICEVOX_LANGUAGE = "ja-JP"
_VOICEVOX_DEFAULT_PORT = 50021
# VoiceVox pitchScale is an offset around 0.0 rather than a multiplier.
_PITCH_SCALE_LIMIT = 0.15


class VoiceVoxError(RuntimeError):
    """Raised when the VoiceVox engine returns an unexpected response."""


class VoiceVoxUnavailableError(ConnectionError):
    """Raised when the VoiceVox engine is unreachable."""


class PlaybackError(RuntimeError):
    """Raised when the audio player cannot render synthesized speech."""


def _normalize_base_url(base_url: str) -> str:
    candidate = (base_url or "").strip()
    if not candidate:
        raise ValueError("VoiceVox URL must not be empty.")
    if "://" not in candidate:
        candidate = f"http://{candidate}"
    parsed = urlparse(candidate)
    host = parsed.hostname or "127.0.0.1"
    port = parsed.port or _VOICEVOX_DEFAULT_PORT
    return f"{parsed.scheme or 'http'}://{host}:{port}"


def voicevox_is_ready(base_url: str, *, request_timeout: float = 1.0) -> bool:
    try:
        resp = requests.get(f"{_normalize_base_url(base_url)}/version", timeout=request_timeout)
    except requests.RequestException:
        return False
    return resp.status_code == 200


def voice_options_from_payload(payload: object) -> list[VoiceOption]:
    """Flatten the /speakers payload into one voice per speaker style."""
    if not isinstance(payload, list):
        return []
    voices: list[VoiceOption] = []
    seen_ids: set[int] = set()
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        speaker_name = str(entry.get("name") or "").strip()
        styles = entry.get("styles")
        if not isinstance(styles, list):
            continue
        for style in styles:
            if not isinstance(style, dict):
                continue
            style_id = style.get("id")
            if isinstance(style_id, bool) or not isinstance(style_id, int):
                continue
            if style_id in seen_ids:
                continue
            seen_ids.add(style_id)
            style_name = str(style.get("name") or "").strip()
            name_parts = [part for part in (speaker_name, style_name) if part]
            voices.append(
                VoiceOption(
                    id=str(style_id),
                    name="-".join(name_parts) if name_parts else f"Voice-{style_id}",
                    language=VOICEVOX_LANGUAGE,
                )
            )
    voices.sort(key=lambda voice: int(voice.id))
    return voices


def speaker_for_voice(voice: str | None, default: int = DEFAULT_SPEAKER_ID) -> int:
    if voice is None:
        return default
    try:
        speaker = int(voice.strip())
    except ValueError:
        return default
    return speaker if speaker >= 0 else default


def pitch_scale_for(pitch: float) -> float:
    offset = (pitch - 1.0) * _PITCH_SCALE_LIMIT
    return max(-_PITCH_SCALE_LIMIT, min(_PITCH_SCALE_LIMIT, offset))


class VoiceVoxClient:
    """
    Thin wrapper around the VoiceVox HTTP API.
    """

    def __init__(self, base_url: str = DEFAULT_ENGINE_URL, timeout: float = 30.0) -> None:
        self.base_url = _normalize_base_url(base_url)
        self.timeout = timeout
        self._session = requests.Session()

    def _post(self, endpoint: str, **kwargs: object) -> requests.Response:
        try:
            resp = self._session.post(f"{self.base_url}{endpoint}", timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise VoiceVoxUnavailableError(
                f"Failed to contact VoiceVox engine at {self.base_url}"
            ) from exc
        if resp.status_code != 200:
            raise VoiceVoxError(f"{endpoint} failed with status {resp.status_code}: {resp.text}")
        return resp

    def build_audio_query(
        self,
        text: str,
        speaker_id: int,
        *,
        speed_scale: float | None = None,
        pitch_scale: float | None = None,
    ) -> dict:
        resp = self._post("/audio_query", params={"text": text, "speaker": speaker_id})
        try:
            query_payload = resp.json()
        except json.JSONDecodeError as exc:
            raise VoiceVoxError("VoiceVox returned invalid JSON for /audio_query") from exc
        if not isinstance(query_payload, dict):
            raise VoiceVoxError("VoiceVox returned an unexpected /audio_query payload")
        if speed_scale is not None:
            query_payload["speedScale"] = float(speed_scale)
        if pitch_scale is not None:
            query_payload["pitchScale"] = float(pitch_scale)
        return query_payload

    def synthesize_from_query(self, query_payload: dict, speaker_id: int) -> bytes:
        resp = self._post("/synthesis", params={"speaker": speaker_id}, json=query_payload)
        return resp.content

    def synthesize_wav(
        self,
        text: str,
        speaker_id: int,
        *,
        speed_scale: float | None = None,
        pitch_scale: float | None = None,
    ) -> bytes:
        """
        Generate WAV audio bytes for the provided text via VoiceVox.
        """
        query_payload = self.build_audio_query(
            text,
            speaker_id,
            speed_scale=speed_scale,
            pitch_scale=pitch_scale,
        )
        return self.synthesize_from_query(query_payload, speaker_id)

    def speakers(self) -> list[dict[str, object]]:
        try:
            resp = self._session.get(f"{self.base_url}/speakers", timeout=self.timeout)
        except requests.RequestException as exc:
            raise VoiceVoxUnavailableError(
                f"Failed to list speakers at {self.base_url}"
            ) from exc
        if resp.status_code != 200:
            raise VoiceVoxError(f"/speakers failed with status {resp.status_code}: {resp.text}")
        try:
            payload = resp.json()
        except json.JSONDecodeError as exc:
            raise VoiceVoxError("VoiceVox returned invalid JSON for /speakers") from exc
        return payload if isinstance(payload, list) else []

    def close(self) -> None:
        self._session.close()


class AudioPlayer(Protocol):
    def start(self, wav_path: Path) -> subprocess.Popen: ...


class FfplayPlayer:
    def __init__(self, ffplay_path: str = "ffplay") -> None:
        self.ffplay_path = ffplay_path

    def start(self, wav_path: Path) -> subprocess.Popen:
        cmd = [
            self.ffplay_path,
            "-nodisp",
            "-autoexit",
            "-loglevel",
            "error",
            str(wav_path),
        ]
        try:
            return subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
        except OSError as exc:
            raise PlaybackError(f"Failed to launch {self.ffplay_path}: {exc}") from exc


class _Job:
    def __init__(self) -> None:
        self.cancelled = threading.Event()
        self.process: subprocess.Popen | None = None
        self.paused = False


def _send_signal(process: subprocess.Popen, name: str) -> None:
    signum = getattr(signal, name, None)
    if signum is None or process.poll() is not None:
        return
    try:
        process.send_signal(signum)
    except OSError as exc:  # pragma: no cover - process already gone
        debug_log(f"Failed to send {name} to player: {exc}")


class VoiceVoxSpeechEngine:
    """
    Speech engine that synthesizes each utterance with VoiceVox and plays it
    with an external player process.

    Synthesis and playback run on a worker thread; the completion or error
    callback is invoked from that thread unless the utterance was stopped.
    """

    def __init__(
        self,
        client: VoiceVoxClient,
        *,
        player: AudioPlayer | None = None,
        default_speaker: int = DEFAULT_SPEAKER_ID,
    ) -> None:
        self.client = client
        self.player = player or FfplayPlayer()
        self.default_speaker = default_speaker
        self._lock = threading.Lock()
        self._job: _Job | None = None

    def speak(
        self,
        text: str,
        options: SpeechOptions,
        on_done: Callable[[], None],
        on_error: Callable[[object], None],
    ) -> None:
        job = _Job()
        with self._lock:
            previous = self._job
            self._job = job
        if previous is not None:
            self._cancel(previous)
        worker = threading.Thread(
            target=self._run,
            args=(job, text, options, on_done, on_error),
            name="yomi-voicevox",
            daemon=True,
        )
        worker.start()

    def _run(
        self,
        job: _Job,
        text: str,
        options: SpeechOptions,
        on_done: Callable[[], None],
        on_error: Callable[[object], None],
    ) -> None:
        wav_path: Path | None = None
        try:
            wav = self.client.synthesize_wav(
                text,
                speaker_for_voice(options.voice, self.default_speaker),
                speed_scale=options.rate,
                pitch_scale=pitch_scale_for(options.pitch),
            )
            if job.cancelled.is_set():
                return
            fd, tmp_name = tempfile.mkstemp(prefix="yomi-", suffix=".wav")
            wav_path = Path(tmp_name)
            with os.fdopen(fd, "wb") as fh:
                fh.write(wav)
            with self._lock:
                if job.cancelled.is_set():
                    return
                job.process = self.player.start(wav_path)
                if job.paused:
                    _send_signal(job.process, "SIGSTOP")
            returncode = job.process.wait()
            if job.cancelled.is_set():
                return
            if returncode != 0:
                raise PlaybackError(f"Audio player exited with status {returncode}")
        except (VoiceVoxError, PlaybackError, OSError) as exc:
            if not job.cancelled.is_set():
                on_error(exc)
            return
        finally:
            if wav_path is not None:
                wav_path.unlink(missing_ok=True)
        on_done()

    def pause(self) -> None:
        with self._lock:
            job = self._job
            if job is None or job.paused:
                return
            job.paused = True
            process = job.process
        # Without a process yet, _run stops the player as soon as it starts.
        if process is not None:
            _send_signal(process, "SIGSTOP")

    def resume(self) -> None:
        with self._lock:
            job = self._job
            if job is None or not job.paused:
                return
            job.paused = False
            process = job.process
        if process is not None:
            _send_signal(process, "SIGCONT")

    def stop(self) -> None:
        with self._lock:
            job = self._job
            self._job = None
        if job is not None:
            self._cancel(job)

    def _cancel(self, job: _Job) -> None:
        with self._lock:
            job.cancelled.set()
            process = job.process
        if process is None or process.poll() is not None:
            return
        if job.paused:
            _send_signal(process, "SIGCONT")
            job.paused = False
        process.terminate()

    def list_voices(self, language: str | None = None) -> list[VoiceOption]:
        voices = voice_options_from_payload(self.client.speakers())
        if not language:
            return voices
        prefix = language.casefold()
        return [voice for voice in voices if voice.language.casefold().startswith(prefix)]

    def close(self) -> None:
        self.stop()
        self.client.close()


__all__ = [
    "AudioPlayer",
    "FfplayPlayer",
    "PlaybackError",
    "VOICEVOX_LANGUAGE",
    "VoiceVoxClient",
    "VoiceVoxError",
    "VoiceVoxSpeechEngine",
    "VoiceVoxUnavailableError",
    "pitch_scale_for",
    "speaker_for_voice",
    "voice_options_from_payload",
    "voicevox_is_ready",
]
