"""Character-roleplay chat with Gemini: text, pictures, voice and live calls."""

__version__ = "0.1.0"
