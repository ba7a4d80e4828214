"""Exceptions raised by the command and storage layers."""


class SessionDLError(Exception):
    """Base class for sessiondl errors."""


class CommandError(SessionDLError):
    """A ``>`` command could not be run."""


class ClearBlockedError(CommandError):
    """``>clear`` was requested before any backup was taken."""
