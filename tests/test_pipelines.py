import allure
import pytest

from sheet_tasks.clients.base import QaAnswer, SearchHit, ServiceCallError, ServiceResponseError
from sheet_tasks.engine.errors import TaskFatalError, UnknownTaskTypeError
from sheet_tasks.engine.models import FailureClass, RowInput, RowStatus
from sheet_tasks.engine.pipelines import ChatEvaluationPipeline, UrlCleaningPipeline
from sheet_tasks.engine.registry import TaskHandlerRegistry

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Row Pipelines"),
]

_UNAVAILABLE = ServiceCallError("search", "HTTP 503", status_code=503)


def _row(payload: dict[str, object], row_number: int = 1) -> RowInput:
    return RowInput(task_id="task-1", row_number=row_number, payload=payload)


def _url_pipeline(registry: TaskHandlerRegistry) -> UrlCleaningPipeline:
    pipeline = registry.resolve("url-cleaning")
    assert isinstance(pipeline, UrlCleaningPipeline)
    return pipeline


def _chat_pipeline(registry: TaskHandlerRegistry) -> ChatEvaluationPipeline:
    pipeline = registry.resolve("chat-evaluation")
    assert isinstance(pipeline, ChatEvaluationPipeline)
    return pipeline


def test_registry_resolves_default_pipelines_and_rejects_unknown(registry) -> None:
    assert registry.task_types() == ["chat-evaluation", "url-cleaning"]
    with pytest.raises(UnknownTaskTypeError) as raised:
        registry.resolve("pdf-summary")
    assert raised.value.task_type == "pdf-summary"
    with pytest.raises(ValueError, match="already registered"):
        registry.register("url-cleaning", _url_pipeline(registry))


def test_url_cleaning_direct_search_hit(registry, fake_search) -> None:
    url = "https://tracker.example/r?id=1"
    fake_search.responses[url] = [
        SearchHit(url="https://clean.example/story", title="Story"),
        SearchHit(url="https://other.example"),
    ]

    outcome = _url_pipeline(registry).process(_row({"url": url}))

    assert outcome.ok
    assert outcome.output.status == RowStatus.SUCCESS
    assert outcome.output.method == "direct_search"
    assert outcome.output.payload["cleaned_url"] == "https://clean.example/story"
    assert fake_search.calls == [url]


def test_url_cleaning_falls_back_to_title_search(registry, fake_search) -> None:
    url = "https://news.example.com/2024/big-storm-hits-coast.html"
    fake_search.responses["big storm hits coast"] = [SearchHit(url="https://clean.example/storm")]

    outcome = _url_pipeline(registry).process(_row({"url": url}))

    assert outcome.ok
    assert outcome.output.method == "title_search"
    assert outcome.output.payload["cleaned_url"] == "https://clean.example/storm"
    assert fake_search.calls == [url, "big storm hits coast"]


def test_url_cleaning_parsed_title_does_not_rescue_unparsable_url(registry, fake_search) -> None:
    fake_search.responses["Some Title"] = [SearchHit(url="https://clean.example/some")]

    outcome = _url_pipeline(registry).process(
        _row({"url": "not a url", "parsed_title": "Some Title"}),
    )

    assert not outcome.ok
    assert outcome.output.status == RowStatus.URL_PARSE_ERROR
    assert outcome.output.method == "title_extraction_failed"
    assert outcome.output.payload["parsed_title"] == "Some Title"
    assert fake_search.calls == ["not a url"]


def test_url_cleaning_both_searches_miss(registry, fake_search) -> None:
    outcome = _url_pipeline(registry).process(_row({"url": "https://example.com/lost-page"}))

    assert not outcome.ok
    assert outcome.output.status == RowStatus.FAILED
    assert outcome.output.method == "both_failed"
    assert outcome.output.payload["cleaned_url"] is None


def test_url_cleaning_unparsable_url_skips_title_search(registry, fake_search) -> None:
    url = "https://example.com/2024/05/17"

    outcome = _url_pipeline(registry).process(_row({"url": url}))

    assert outcome.output.status == RowStatus.URL_PARSE_ERROR
    assert outcome.output.method == "title_extraction_failed"
    assert fake_search.calls == [url]


def test_url_cleaning_empty_url_is_a_parse_error(registry, fake_search) -> None:
    outcome = _url_pipeline(registry).process(_row({"url": "  "}))

    assert outcome.output.status == RowStatus.URL_PARSE_ERROR
    assert fake_search.calls == []


def test_url_cleaning_search_outage_is_row_local(registry, fake_search, sleeps) -> None:
    url = "https://example.com/a"
    fake_search.responses[url] = _UNAVAILABLE

    outcome = _url_pipeline(registry).process(_row({"url": url}))

    assert not outcome.ok
    assert outcome.output.status == RowStatus.API_ERROR
    assert outcome.output.method == "api_unavailable"
    assert "after 3 attempts" in (outcome.output.error or "")
    assert fake_search.calls == [url, url, url]
    assert sleeps == [30.0, 60.0]


def test_chat_evaluation_scores_answer_and_citations(registry, fake_qa, fake_similarity) -> None:
    fake_qa.responses["Who wrote Hamlet?"] = QaAnswer(
        answer="Shakespeare",
        citations=["https://lit.example/hamlet", "https://other.example"],
    )
    fake_similarity.value = 0.9

    outcome = _chat_pipeline(registry).process(
        _row(
            {
                "question": "Who wrote Hamlet?",
                "golden_answer": "William Shakespeare",
                "golden_citations": ["https://www.lit.example/hamlet/"],
            },
        ),
    )

    assert outcome.ok
    payload = outcome.output.payload
    assert payload["api_answer"] == "Shakespeare"
    assert payload["answer_similarity"] == 0.9
    assert payload["citation_similarity"] == pytest.approx(0.5)
    assert fake_similarity.calls == [("William Shakespeare", "Shakespeare")]
    assert outcome.output.latency_ms is not None


def test_chat_evaluation_malformed_golden_citation_stays_row_local(registry, fake_qa) -> None:
    fake_qa.responses["Where?"] = QaAnswer(answer="Here", citations=["https://a.example/x"])

    outcome = _chat_pipeline(registry).process(
        _row(
            {
                "question": "Where?",
                "golden_answer": "Here",
                "golden_citations": ["http://[broken"],
            },
        ),
    )

    assert outcome.ok
    assert outcome.output.status == RowStatus.SUCCESS
    assert outcome.output.payload["citation_similarity"] == 0.0


def test_chat_evaluation_missing_question_issues_no_calls(registry, fake_qa) -> None:
    outcome = _chat_pipeline(registry).process(_row({"question": "", "golden_answer": "x"}))

    assert outcome.output.status == RowStatus.INVALID_INPUT
    assert outcome.reason == "missing_question"
    assert fake_qa.calls == []


def test_chat_evaluation_similarity_failure_is_row_local(
    registry,
    fake_similarity,
) -> None:
    fake_similarity.error = ServiceResponseError("similarity", "missing numeric field 'score'")

    outcome = _chat_pipeline(registry).process(_row({"question": "Q?", "golden_answer": "A"}))

    assert not outcome.ok
    assert outcome.output.status == RowStatus.FAILED
    assert outcome.output.payload["answer_similarity"] is None
    assert outcome.output.payload["api_answer"] == "answer to Q?"
    assert len(fake_similarity.calls) == 1


def test_chat_evaluation_qa_outage_escalates_with_row_output(registry, fake_qa, sleeps) -> None:
    fake_qa.responses["Q?"] = ServiceCallError("qa", "HTTP 502", status_code=502)

    with pytest.raises(TaskFatalError) as raised:
        _chat_pipeline(registry).process(_row({"question": "Q?"}, row_number=4))

    error = raised.value
    assert error.failure_class == FailureClass.SERVICE_UNAVAILABLE
    assert "row 4" in error.reason
    assert error.output is not None
    assert error.output.row_number == 4
    assert error.output.status == RowStatus.API_ERROR
    assert fake_qa.calls == ["Q?", "Q?", "Q?"]
    assert sleeps == [30.0, 60.0]
    assert error.details["failure_class"] == "server_error"
    assert error.details["attempts"] == 3


def test_chat_evaluation_non_retryable_qa_error_escalates_immediately(registry, fake_qa) -> None:
    fake_qa.responses["Q?"] = ServiceCallError("qa", "HTTP 400", status_code=400)

    with pytest.raises(TaskFatalError) as raised:
        _chat_pipeline(registry).process(_row({"question": "Q?"}))

    assert fake_qa.calls == ["Q?"]
    assert raised.value.details["failure_class"] == "client_error"
    assert raised.value.details["attempts"] == 1
