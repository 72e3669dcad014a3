"""Error hierarchy."""
from __future__ import annotations


class AirChatError(Exception):
    """Base class for all airchat errors."""


class ConfigurationError(AirChatError):
    """Chat cannot be loaded as configured, e.g. no model is bound to it."""


class EngineLoadError(AirChatError):
    """Model file missing or malformed, or the device rejects the configuration."""


class EngineRuntimeError(AirChatError):
    """Engine failed while generating, or generate() was called while unloaded."""


class StorageError(AirChatError):
    """History store read or write failed."""
