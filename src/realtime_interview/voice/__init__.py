"""Speech pipeline.

This package provides the audio side of a voice interview:

mic -> preprocessing -> realtime STT -> transport -> (server) -> transport -> streaming TTS -> speaker

The server-side orchestrator remains the single authority for interview flow.
Device access (sounddevice) lives in `voice.audio_io` and is only imported
when a device is actually opened.
"""

from realtime_interview.voice.audio_io import (
    AudioIOConfig,
    AudioSink,
    AudioSource,
    MicrophoneError,
    ScheduledBuffer,
    SoundDeviceSink,
    SoundDeviceSource,
    float32_to_pcm16,
    pcm16_to_float32,
)
from realtime_interview.voice.preprocessing import CapturePreprocessor
from realtime_interview.voice.speakable import to_speakable_text
from realtime_interview.voice.stt import (
    EphemeralCredentialIssuer,
    RealtimeSTTClient,
    SpeechServiceError,
    STTCallbacks,
    STTConfig,
)
from realtime_interview.voice.tts import (
    AudioLevelMeter,
    StreamingTTSClient,
    TTSCallbacks,
    TTSConfig,
    TTSError,
)
from realtime_interview.voice.voice_session import VoiceSession, VoiceSessionConfig, VoiceUICallbacks

__all__ = [
    "AudioIOConfig",
    "AudioLevelMeter",
    "AudioSink",
    "AudioSource",
    "CapturePreprocessor",
    "EphemeralCredentialIssuer",
    "MicrophoneError",
    "RealtimeSTTClient",
    "STTCallbacks",
    "STTConfig",
    "ScheduledBuffer",
    "SoundDeviceSink",
    "SoundDeviceSource",
    "SpeechServiceError",
    "StreamingTTSClient",
    "TTSCallbacks",
    "TTSConfig",
    "TTSError",
    "VoiceSession",
    "VoiceSessionConfig",
    "VoiceUICallbacks",
    "float32_to_pcm16",
    "pcm16_to_float32",
    "to_speakable_text",
]
