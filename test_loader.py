import json
import random

import pytest
import requests

from conftest import SHEET_CSV, FakeHttp, FakeResponse
from exam_session.errors import MalformedSource, QuestionFetchError
from exam_session.loader import QuestionLoader, parse_question_csv, to_csv_export_url


def make_loader(*outcomes, **kwargs):
    kwargs.setdefault("rng", random.Random(3))
    return QuestionLoader(http=FakeHttp(*outcomes), sleep=lambda s: None, **kwargs)


def test_parse_row_maps_answer_to_one_based_index():
    questions = parse_question_csv("Question,Options,Correct Answer\nWhat is 2+2?,3|4|5,4\n")

    assert len(questions) == 1
    q = questions[0]
    assert q.prompt == "What is 2+2?"
    assert q.options == ("3", "4", "5")
    assert q.correct_answer == 2
    assert q.correct_index == 1


def test_rows_with_unknown_answer_are_skipped_but_keep_ids():
    text = "question,options,answer\nA?,x|y,z\nB?,x|y,y\n"
    questions = parse_question_csv(text)
    assert [q.id for q in questions] == [2]


def test_missing_column_is_malformed():
    with pytest.raises(MalformedSource):
        parse_question_csv("Question,Correct Answer\nA?,x\n")


def test_header_with_bom_is_accepted():
    assert len(parse_question_csv("\ufeff" + SHEET_CSV)) == 3


def test_google_sheet_link_is_rewritten():
    url = "https://docs.google.com/spreadsheets/d/abc123/edit#gid=42"
    assert to_csv_export_url(url) == "https://docs.google.com/spreadsheets/d/abc123/export?format=csv&gid=42"
    assert to_csv_export_url("https://example.com/q.csv") == "https://example.com/q.csv"


def test_remote_questions_shuffled_and_truncated(practice_exam, cert_exam):
    loader = make_loader(FakeResponse(200, SHEET_CSV))

    questions = loader.load(cert_exam)

    assert len(questions) == 2
    assert loader.last_source == "remote"
    assert {q.prompt for q in questions} <= {"What is 2+2?", "Capital of France?", "Largest planet?"}


def test_http_500_falls_back_to_bundled_pool(practice_exam):
    loader = make_loader(FakeResponse(500, "oops"))

    questions = loader.load(practice_exam)

    assert len(questions) == 10
    assert [q.id for q in questions] == list(range(1, 11))
    assert loader.last_source == "fallback"


def test_network_error_is_retried_then_falls_back(practice_exam):
    http = FakeHttp(requests.ConnectionError("down"))
    loader = QuestionLoader(http=http, max_retries=3, sleep=lambda s: None)

    questions = loader.load(practice_exam)

    assert len(http.calls) == 3
    assert len(questions) == 10


def test_fetch_document_raises_on_non_2xx():
    with pytest.raises(QuestionFetchError):
        make_loader(FakeResponse(404, "")).fetch_document("https://example.com/q.csv")


def test_sheet_without_valid_rows_falls_back(practice_exam):
    loader = make_loader(FakeResponse(200, "Question,Options,Correct Answer\nA?,x|y,z\n"))
    assert len(loader.load(practice_exam)) == 10
    assert loader.last_source == "fallback"


def test_fallback_shorter_than_requested_returns_what_exists(tmp_path, practice_exam):
    pool = tmp_path / "pool.json"
    pool.write_text(json.dumps([{"question": "Only?", "options": ["a", "b"], "correct_answer": 2}]))
    loader = make_loader(FakeResponse(500, ""), fallback_path=pool)

    questions = loader.load(practice_exam)

    assert len(questions) == 1
    assert questions[0].id == 1
    assert questions[0].correct_index == 1


def test_unreadable_fallback_pool_gives_empty_list(tmp_path, practice_exam):
    loader = make_loader(FakeResponse(500, ""), fallback_path=tmp_path / "missing.json")
    assert loader.load(practice_exam) == []
