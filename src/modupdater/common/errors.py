"""Error taxonomy for update resolution and installation.

Per-mod errors (config, network, parse, checksum) are caught at the mod boundary
and turned into messages; they never abort a pass. ``UpdateCancelledError`` is
pass-level and is reported as "no result" rather than as an error.
"""

from __future__ import annotations


class ModUpdateError(Exception):
    """Base class for expected update failures."""


class ConfigError(ModUpdateError):
    """Mod descriptor or runtime configuration is missing or malformed."""


class NetworkError(ModUpdateError):
    """Remote host unreachable, timed out or answered with a non-2xx status."""


class ParseError(ModUpdateError):
    """Remote manifest or release payload could not be parsed."""


class ChecksumError(ModUpdateError):
    """Downloaded file does not match the size or hash it was published with."""


class UpdateCancelledError(ModUpdateError):
    """The user cancelled the running pass."""
