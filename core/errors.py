from __future__ import annotations


class PipelineError(Exception):
    """Base class for errors surfaced to callers of the pipeline."""

    status_code: int = 500


class KeywordValidationError(PipelineError, ValueError):
    status_code = 400


class KeywordNotFoundError(PipelineError, LookupError):
    status_code = 404

    def __init__(self, keyword: str) -> None:
        super().__init__(f'Keyword "{keyword}" is not registered')
        self.keyword = keyword


class CycleInProgressError(PipelineError):
    status_code = 409

    def __init__(self, keyword: str) -> None:
        super().__init__(f'Keyword "{keyword}" is already being processed')
        self.keyword = keyword


class FeedParseError(Exception):
    """A feed payload that could not be turned into entries."""
