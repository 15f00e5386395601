"""Translate the stream host's state vocabulary into the local processing lifecycle."""

import logging
from typing import Dict

from api.enums import ProcessingStatus

logger = logging.getLogger(__name__)

# Remote state -> local status. The host has used both hyphenated and compact
# spellings; add new vendor states here.
REMOTE_STATE_MAP: Dict[str, ProcessingStatus] = {
    "pending-upload": ProcessingStatus.UPLOADING,
    "pendingupload": ProcessingStatus.UPLOADING,
    "downloading": ProcessingStatus.UPLOADING,
    "queued": ProcessingStatus.PROCESSING,
    "in-progress": ProcessingStatus.PROCESSING,
    "inprogress": ProcessingStatus.PROCESSING,
    "ready": ProcessingStatus.READY,
    "error": ProcessingStatus.ERROR,
}

# Unknown states never become terminal
UNKNOWN_STATE_DEFAULT = ProcessingStatus.PROCESSING


def map_remote_state(raw_state: str) -> ProcessingStatus:
    """Map a raw remote state to a local processing status.

    Unrecognized states fail open to ``processing``.
    """
    key = (raw_state or "").strip().lower()
    status = REMOTE_STATE_MAP.get(key)
    if status is None:
        logger.warning(f"Unrecognized remote state '{raw_state}', treating as {UNKNOWN_STATE_DEFAULT.value}")
        return UNKNOWN_STATE_DEFAULT
    return status
