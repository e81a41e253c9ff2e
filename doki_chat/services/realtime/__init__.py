from .capabilities import CaptureDeviceError
from .config import LiveCallConfig, build_call_config, build_live_connect_config
from .credentials import CredentialProvider, EnvCredentialProvider, is_credential_error
from .events import CallClosed, CallError, CallOpened, InboundAudio, MediaChunk, TurnInterrupted
from .manager import CallDevices, CallManager, local_devices
from .playback import PlaybackScheduler
from .session import RealtimeCallSession

__all__ = [
    "CallClosed",
    "CallDevices",
    "CallError",
    "CallManager",
    "CallOpened",
    "CaptureDeviceError",
    "CredentialProvider",
    "EnvCredentialProvider",
    "InboundAudio",
    "LiveCallConfig",
    "MediaChunk",
    "PlaybackScheduler",
    "RealtimeCallSession",
    "TurnInterrupted",
    "build_call_config",
    "build_live_connect_config",
    "is_credential_error",
    "local_devices",
]
