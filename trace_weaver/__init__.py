"""
trace-weaver
Build-time trace instrumentation for Python web services

Features:
- Function ENTER/EXIT/ERROR logging without editing sources
- Endpoint logging for FastAPI, Flask, aiohttp style route registrations
- Sync, async and generator aware wrappers that keep return values and exceptions intact
- Crash-proof payload serialization
- Lossless rewriting via libcst (comments and formatting survive)
"""
from .config import Settings, get_settings
from .emitter import SourceParseError, build, instrument_source
from .models import BuildReport, FileReport, LogEvent, Phase, SubjectKind
from .serialization import safe_to_string

__version__ = "0.1.0"
__all__ = [
    "Settings",
    "get_settings",
    "SourceParseError",
    "build",
    "instrument_source",
    "BuildReport",
    "FileReport",
    "LogEvent",
    "Phase",
    "SubjectKind",
    "safe_to_string",
]
