"""
Exceptions raised by the credit report pipeline.
"""


class PipelineError(Exception):
    """Base exception for all pipeline errors"""
    pass


class TransientStoreError(PipelineError):
    """The persistent store could not be reached; the caller should back off and retry"""
    pass


class JobFailure(PipelineError):
    """A stage error that is fatal to the current job.

    ``reason`` is the short message written to the job's ``error`` column.
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ReportNotFoundError(JobFailure):
    """The report row for a job or request does not exist for that user"""

    def __init__(self, reason: str = "report_not_found"):
        super().__init__(reason)


class StorageError(JobFailure):
    """Blob store read or write failed"""
    pass


class ExtractionError(JobFailure):
    """Text could not be extracted from the uploaded document"""
    pass


class AnalysisError(JobFailure):
    """The analysis engine failed or returned no usable document"""
    pass


class LetterError(PipelineError):
    """Generating the letter for one bureau failed"""
    pass


class ForbiddenKeyError(PipelineError):
    """A blob key outside the requesting user's namespace was requested"""
    pass
