"""Exception types shared across the pipeline."""
from typing import List


class CollaboratorError(RuntimeError):
    """A generation service failed or returned something unusable."""


class StoryStoreError(RuntimeError):
    """Reading or writing a story record failed."""


class MediaEncodingError(RuntimeError):
    """ffmpeg/ffprobe invocation failed."""


def format_exception(err: BaseException) -> str:
    # SSE transport failures surface as exception groups from anyio.
    if isinstance(err, BaseExceptionGroup):
        subs = "; ".join(_exc_summary(sub) for sub in _flatten_exceptions(err))
        if subs:
            return f"{_exc_summary(err)} | sub-exceptions: {subs}"
    return _exc_summary(err)


def _exc_summary(err: BaseException) -> str:
    msg = str(err).strip()
    if not msg:
        msg = repr(err)
    return f"{type(err).__name__}: {msg}"


def _flatten_exceptions(err: BaseException) -> List[BaseException]:
    if isinstance(err, BaseExceptionGroup):
        flattened: List[BaseException] = []
        for sub in err.exceptions:
            flattened.extend(_flatten_exceptions(sub))
        return flattened
    return [err]
