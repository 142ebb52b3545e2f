"""Error types raised by the remix engine."""


class RemixError(Exception):
    """Base class for all remix engine errors."""


class DecodeError(RemixError, ValueError):
    """The source bytes are not a decodable GIF."""


class ValidationError(RemixError, ValueError):
    """A caller-supplied value was rejected before any work started."""


class EncodeError(RemixError):
    """The encoder failed while producing the output GIF."""


class CompositingError(RemixError):
    """A compositing pass was driven out of order or after it was superseded."""


class GenerateInProgressError(RemixError):
    """A generate request is already Rendering or Encoding in this session."""
