"""CDN redirect policy."""

from forgeupdate.cdn.redirector import (
    CdnRedirector,
    RedirectTo,
    Resolution,
    StreamDirect,
    validate_template,
)

__all__ = [
    "CdnRedirector",
    "RedirectTo",
    "Resolution",
    "StreamDirect",
    "validate_template",
]
