"""
Inference runtime: daemon supervision, installation and stream decoding.
"""

from .installer import RuntimeInstaller, verify_installer_artifact
from .stream import (
    ErrorEvent,
    PartialOutput,
    ProgressEvent,
    StatusEvent,
    StreamDecoder,
    UnknownEvent,
    decode_line,
    decode_stream,
    progress_from_status,
)
from .supervisor import ModelListing, RuntimeSupervisor

__all__ = [
    "RuntimeInstaller",
    "verify_installer_artifact",
    "ErrorEvent",
    "PartialOutput",
    "ProgressEvent",
    "StatusEvent",
    "StreamDecoder",
    "UnknownEvent",
    "decode_line",
    "decode_stream",
    "progress_from_status",
    "ModelListing",
    "RuntimeSupervisor",
]
