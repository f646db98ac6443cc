# bulkstage/etl/pipeline.py

"""
Pipeline plumbing: operations, the executor that chains them, and the
pipeline-wide error state that stages consult.

Operations are chained lazily: each stage's execute() receives the iterator
returned by the stage before it, so rows are pulled through the whole chain
one at a time by the last stage.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Iterable, Iterator, List, Mapping, Optional

from ..logging_utils import ErrorCountHandler

logger = logging.getLogger(__name__)


class ErrorDetail:
    """Structured error record kept by the pipeline error state."""

    __slots__ = ("error", "stage", "message")

    def __init__(self, error: BaseException, stage: Optional[str] = None):
        self.error = error
        self.stage = stage
        self.message = str(error)

    def __repr__(self) -> str:
        return f"ErrorDetail(stage={self.stage!r}, error={type(self.error).__name__}, message={self.message!r})"


class PipelineErrorState:
    """
    Pipeline-wide error flag with a single writer and many readers.

    The executor records errors here. Stages only ever receive the read-only
    view returned by reader(). Reads take no lock, so a stage may see an error
    recorded concurrently a little late; stages must tolerate that.
    """

    def __init__(self):
        self._errors: List[ErrorDetail] = []
        self._lock = threading.Lock()
        self._has_errors = False

    def record(self, error: BaseException, stage: Optional[str] = None) -> None:
        with self._lock:
            self._errors.append(ErrorDetail(error, stage))
            self._has_errors = True

    @property
    def has_errors(self) -> bool:
        return self._has_errors

    @property
    def errors(self) -> List[ErrorDetail]:
        return list(self._errors)

    def reset(self) -> None:
        with self._lock:
            self._errors = []
            self._has_errors = False

    def reader(self) -> 'ErrorStateReader':
        return ErrorStateReader(self)


class ErrorStateReader:
    """Read-only handle on a PipelineErrorState."""

    __slots__ = ("_state",)

    def __init__(self, state: PipelineErrorState):
        self._state = state

    @property
    def has_errors(self) -> bool:
        return self._state.has_errors

    @property
    def errors(self) -> List[ErrorDetail]:
        return self._state.errors

    def __repr__(self) -> str:
        return f"ErrorStateReader(has_errors={self.has_errors})"


class LoggedErrorState:
    """
    Read-only error state backed by an ErrorCountHandler: any ERROR logged
    anywhere in the process counts as a pipeline error.

    Example
    -------
    ::

        bulkstage.setup_logging('nightly_load')
        op = BulkInsertOperation('warehouse', 'fact_sales', schema_resolver=resolver,
                                 error_state=LoggedErrorState(get_error_handler()))
    """

    __slots__ = ("handler",)

    def __init__(self, handler: ErrorCountHandler):
        if handler is None:
            raise ValueError("LoggedErrorState needs an ErrorCountHandler; call setup_logging() first")
        self.handler = handler

    @property
    def has_errors(self) -> bool:
        return self.handler.error_count > 0


class Operation(ABC):
    """
    One stage of a pipeline.

    execute() takes the upstream rows and returns the rows for the next stage.
    Sink stages return an empty iterator.
    """

    def __init__(self, name: Optional[str] = None, error_state=None):
        self.name = name or self.__class__.__name__
        self.error_state = error_state

    def attach_error_state(self, error_state) -> None:
        """Give the operation a read-only error state unless it already has one."""
        if self.error_state is None:
            self.error_state = error_state

    @property
    def pipeline_has_errors(self) -> bool:
        return self.error_state is not None and self.error_state.has_errors

    @abstractmethod
    def execute(self, rows: Iterable[Mapping[str, Any]]) -> Iterator[Mapping[str, Any]]:
        """Process ``rows`` and return the rows for the next stage."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"


class PipelineExecutor:
    """
    Runs a chain of operations and records failures in the pipeline error state.

    Example
    -------
    ::

        executor = PipelineExecutor()
        executor.execute('load_nomads', [clean_names, BulkInsertOperation(...)], rows=reader)
        if executor.has_errors:
            ...
    """

    def __init__(self, error_state: Optional[PipelineErrorState] = None):
        self.error_state = error_state if error_state is not None else PipelineErrorState()

    @property
    def has_errors(self) -> bool:
        return self.error_state.has_errors

    def execute(self, name: str, operations: List[Operation], rows: Iterable[Mapping[str, Any]] = ()) -> int:
        """
        Chain ``operations`` over ``rows`` and drain the last stage.

        Returns the number of rows the last stage produced. Exceptions are
        recorded in the error state, logged, and re-raised.
        """
        if not operations:
            raise ValueError(f"Pipeline {name} has no operations")

        reader = self.error_state.reader()
        stage = None
        produced = 0
        logger.info(f"Starting pipeline {name} with {len(operations)} operations")
        try:
            stream = iter(rows)
            for stage in operations:
                stage.attach_error_state(reader)
                stream = stage.execute(stream)
            for _ in stream:
                produced += 1
        except Exception as e:
            # Lazy chains fail while draining, so the failing stage is not always the last one attached
            self.error_state.record(e, stage.name if stage is not None else None)
            logger.error(f"Pipeline {name} failed: {type(e).__name__}: {e}")
            raise
        logger.info(f"Completed pipeline {name}: {produced:,} rows out")
        return produced
