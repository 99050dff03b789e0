"""Pipeline correlation context for structured logs.

Stage jobs for one backtest run on whichever worker picks them up. To group
every log line of a run together, the worker stores the pipeline id (and the
stage being executed) in context variables for the duration of the job and a
logging filter copies them onto each record.

Example:
    >>> from libs.common.logging.context import PipelineLogContext, get_pipeline_id
    >>> with PipelineLogContext("pipe-1", stage="load"):
    ...     get_pipeline_id()
    'pipe-1'
    >>> get_pipeline_id() is None
    True
"""

import contextvars
from types import TracebackType

_pipeline_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "pipeline_id", default=None
)
_stage_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("stage", default=None)


def get_pipeline_id() -> str | None:
    """Get the pipeline id bound to the current context, if any."""
    return _pipeline_id_var.get()


def get_stage() -> str | None:
    """Get the stage bound to the current context, if any."""
    return _stage_var.get()


def set_pipeline_id(pipeline_id: str, stage: str | None = None) -> None:
    """Bind a pipeline id (and optionally a stage) to the current context.

    Args:
        pipeline_id: Pipeline identifier
        stage: Stage currently executing

    Raises:
        ValueError: If pipeline_id is empty
    """
    if not pipeline_id:
        raise ValueError("Pipeline ID cannot be empty")
    _pipeline_id_var.set(pipeline_id)
    _stage_var.set(stage)


def clear_pipeline_id() -> None:
    """Remove the pipeline id and stage from the current context."""
    _pipeline_id_var.set(None)
    _stage_var.set(None)


class PipelineLogContext:
    """Context manager that scopes a pipeline id to a block of work.

    The previous binding is restored on exit, so nested contexts behave.

    Example:
        >>> with PipelineLogContext("pipe-42", stage="score") as pipeline_id:
        ...     pipeline_id
        'pipe-42'
    """

    def __init__(self, pipeline_id: str, stage: str | None = None) -> None:
        self.pipeline_id = pipeline_id
        self.stage = stage
        self._tokens: tuple[contextvars.Token[str | None], contextvars.Token[str | None]] | None = (
            None
        )

    def __enter__(self) -> str:
        if not self.pipeline_id:
            raise ValueError("Pipeline ID cannot be empty")
        self._tokens = (
            _pipeline_id_var.set(self.pipeline_id),
            _stage_var.set(self.stage),
        )
        return self.pipeline_id

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._tokens is not None:
            pipeline_token, stage_token = self._tokens
            _stage_var.reset(stage_token)
            _pipeline_id_var.reset(pipeline_token)
            self._tokens = None
