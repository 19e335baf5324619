"""Row pipelines keyed by task type."""

from sheet_tasks.engine.pipelines.base import RowOutcome, RowPipeline
from sheet_tasks.engine.pipelines.chat_evaluation import ChatEvaluationPipeline
from sheet_tasks.engine.pipelines.url_cleaning import UrlCleaningPipeline

__all__ = [
    "ChatEvaluationPipeline",
    "RowOutcome",
    "RowPipeline",
    "UrlCleaningPipeline",
]
