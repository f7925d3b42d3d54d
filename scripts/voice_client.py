#!/usr/bin/env python

import argparse
import asyncio
import dataclasses
import os

from realtime_interview.config import get_settings
from realtime_interview.transport.client import ClientCallbacks, ClientConfig, InterviewSocketClient
from realtime_interview.voice.audio_io import AudioIOConfig, SoundDeviceSink, SoundDeviceSource
from realtime_interview.voice.preprocessing import CapturePreprocessor
from realtime_interview.voice.stt import EphemeralCredentialIssuer, RealtimeSTTClient, STTConfig
from realtime_interview.voice.tts import StreamingTTSClient, TTSConfig
from realtime_interview.voice.voice_session import VoiceSession, VoiceSessionConfig, VoiceUICallbacks


def _flag(v: str) -> bool:
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Join an interview session by voice")
    p.add_argument("--session-token", required=True, help="Session token issued when the interview was created")

    p.add_argument(
        "--ws-url",
        default=os.getenv("VOICE_WS_URL", "ws://localhost:3001"),
        help="Interview server URL (default: VOICE_WS_URL or ws://localhost:3001)",
    )
    p.add_argument(
        "--sample-rate",
        type=int,
        default=int(os.getenv("VOICE_SAMPLE_RATE", "24000") or "24000"),
        help="Audio sample rate in Hz (default: VOICE_SAMPLE_RATE or 24000)",
    )

    # TTS gating
    p.add_argument(
        "--tts-enabled",
        default=os.getenv("VOICE_TTS_ENABLED", "true"),
        help="Speak interviewer messages (default: VOICE_TTS_ENABLED or true)",
    )
    p.add_argument(
        "--tts-voice",
        default=os.getenv("VOICE_TTS_VOICE", "alloy"),
        help="Voice name or ElevenLabs voice id (default: VOICE_TTS_VOICE or 'alloy')",
    )

    # STT
    p.add_argument(
        "--stt-credential",
        default=os.getenv("VOICE_STT_CREDENTIAL", None),
        help="Pre-issued realtime credential; minted from OPENAI_API_KEY if omitted",
    )
    return p


def _print_ai_message(message: str) -> None:
    print(f"\n[Interviewer] {message}\n", flush=True)


def _print_error(message: str) -> None:
    if message:
        print(f"[Voice] {message}", flush=True)


async def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    audio_config = AudioIOConfig(sample_rate=args.sample_rate)
    source = SoundDeviceSource(audio_config)
    sink = SoundDeviceSink(audio_config)

    socket_client = InterviewSocketClient(
        ClientConfig(url=args.ws_url),
        ClientCallbacks(
            on_time_warning=lambda remaining_ms: print(f"[Voice] {remaining_ms // 60000} minutes left", flush=True),
            on_error=_print_error,
        ),
    )
    stt = RealtimeSTTClient(
        dataclasses.replace(STTConfig.from_settings(settings), sample_rate=args.sample_rate),
        source=source,
        preprocessor=CapturePreprocessor(sample_rate=args.sample_rate),
    )

    tts_enabled = _flag(args.tts_enabled) and bool(settings.elevenlabs_api_key)
    tts = None
    if tts_enabled:
        await sink.start()
        tts = StreamingTTSClient(
            dataclasses.replace(TTSConfig.from_settings(settings, voice=args.tts_voice), sample_rate=args.sample_rate),
            sink=sink,
        )

    session = VoiceSession(
        socket_client=socket_client,
        stt=stt,
        tts=tts,
        config=VoiceSessionConfig(tts_enabled=tts_enabled),
        ui=VoiceUICallbacks(
            on_listening=lambda: print("[Voice] Listening...", flush=True),
            on_ai_message=_print_ai_message,
            on_error=_print_error,
        ),
    )

    credential = args.stt_credential
    if not credential:
        issuer = EphemeralCredentialIssuer(settings)
        try:
            credential = await issuer.issue()
        finally:
            await issuer.close()

    try:
        await session.start(args.session_token, credential)
        ended = asyncio.create_task(session.wait_until_ended())
        closed = asyncio.create_task(socket_client.wait_closed())
        await asyncio.wait({ended, closed}, return_when=asyncio.FIRST_COMPLETED)
        for task in (ended, closed):
            task.cancel()
    finally:
        await session.close()
        if tts is not None:
            await tts.aclose()
        await sink.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        raise SystemExit(0)
