
from .chat_orchestrator import ChatOrchestrator
from .dictation import GeminiDictation, SpeechRecognizer
from .gemini_client import CredentialRequired, GeminiClient, GeminiEmptyResponse, GeminiError
from .media import InlineImage, MediaRequester, SpeechClip

__all__ = [
    "ChatOrchestrator",
    "CredentialRequired",
    "GeminiClient",
    "GeminiDictation",
    "GeminiEmptyResponse",
    "GeminiError",
    "InlineImage",
    "MediaRequester",
    "SpeechClip",
    "SpeechRecognizer",
]
