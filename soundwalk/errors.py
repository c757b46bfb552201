"""Exception types raised by Soundwalk components."""


class SoundwalkError(Exception):
    """Base class for all Soundwalk errors"""


class ConflictError(SoundwalkError):
    """Operation conflicts with current state (e.g. a walk is already active)"""


class NotFoundError(SoundwalkError):
    """Session or recording id does not exist"""


class FormatError(SoundwalkError):
    """Package or document is not in a format we can read"""


class UnavailableError(SoundwalkError):
    """An external collaborator (GPS, storage, audio player) failed or refused"""
