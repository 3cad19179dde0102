"""Pipeline error taxonomy and classification helpers."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for errors raised by the comparison pipeline."""


class LoadError(PipelineError):
    """A source image could not be fetched or decoded."""

    def __init__(self, source_ref: str | None, message: str) -> None:
        self.source_ref = source_ref
        super().__init__(f"{message}: {source_ref}" if source_ref else message)


class RecoverableAlignmentError(PipelineError):
    """Alignment is infeasible; the pipeline continues with a plain resize."""


class InsufficientFeatures(RecoverableAlignmentError):
    """One of the images produced no keypoints or descriptors."""


class DegenerateHomography(RecoverableAlignmentError):
    """The estimated transform is empty, singular or folds the frame."""


class WorkerError(PipelineError):
    """The vision worker process crashed, timed out or reported an error."""


class PipelineBusyError(PipelineError):
    """A run was submitted while another one is still in flight."""


RECOVERABLE_PIPELINE_ERRORS = (RecoverableAlignmentError,)


def is_recoverable_error(error: BaseException) -> bool:
    return isinstance(error, RECOVERABLE_PIPELINE_ERRORS)
