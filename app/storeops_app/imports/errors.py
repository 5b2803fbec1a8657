from __future__ import annotations


class ImportPipelineError(RuntimeError):
    """Base error for bulk import failures."""


class ImportParseError(ImportPipelineError):
    """Raised when an uploaded file cannot be parsed; fatal to the job."""


class ImportWriteError(ImportPipelineError):
    """Raised when the datastore rejects or under-confirms a batch; fatal to the job."""


class ImportJobStateError(ImportPipelineError):
    """Raised on an illegal job transition or a mutation after a terminal state."""


class ImportJobNotFoundError(ImportPipelineError, KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Import job not found."


class UnknownImportTargetError(ImportPipelineError):
    pass


class MissingImportContextError(ImportPipelineError):
    pass
