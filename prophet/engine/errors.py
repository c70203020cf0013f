# prophet/engine/errors.py


class PipelineError(Exception):
    """Base class for errors raised while preparing or running a pipeline."""


class SetupError(PipelineError):
    """Context could not be built (missing location, no website, ...).

    Raised before any job row exists; the start endpoint reports it as a
    single `error` event.
    """


class StepError(PipelineError):
    """A step could not produce its output."""


def describe_error(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or type(exc).__name__
