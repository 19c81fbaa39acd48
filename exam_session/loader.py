"""
Question Set Loader: fetch a CSV question sheet for an exam, parse it into Questions,
shuffle and truncate. Falls back to the bundled pool when the sheet is unusable.

Sheet layout (header row required, column order free):
    Question,Options,Correct Answer
    What is 2+2?,3|4|5,4
"""
import csv
import io
import json
import logging
import random
import re
import time
from pathlib import Path
from typing import Dict, List, Optional

import requests

from .config import DEFAULT_FALLBACK_POOL
from .errors import MalformedSource, QuestionFetchError
from .models import ExamDefinition, Question

logger = logging.getLogger(__name__)

OPTION_SEPARATOR = "|"
USER_AGENT = "exam-session/0.1 (+question-loader)"

# Accepted header names per column, compared after lower-casing and collapsing separators
PROMPT_HEADERS = {"question", "prompt", "question_text"}
OPTIONS_HEADERS = {"options", "choices"}
ANSWER_HEADERS = {"correct_answer", "answer", "correct"}

GOOGLE_SHEET_RE = re.compile(r"https://docs\.google\.com/spreadsheets/d/([A-Za-z0-9_-]+)")
GID_RE = re.compile(r"[#&?]gid=(\d+)")


def _normalize_header(name: str) -> str:
    return re.sub(r"[\s\-]+", "_", (name or "").strip().lower())


def to_csv_export_url(url: str) -> str:
    """Rewrite a Google Sheets edit/share link to its CSV export URL; other URLs pass through."""
    m = GOOGLE_SHEET_RE.match(url or "")
    if not m or "/export" in url or "output=csv" in url:
        return url
    export = f"https://docs.google.com/spreadsheets/d/{m.group(1)}/export?format=csv"
    gid = GID_RE.search(url)
    if gid:
        export += f"&gid={gid.group(1)}"
    return export


def _find_column(fieldnames: List[str], accepted: set) -> Optional[str]:
    for name in fieldnames:
        if _normalize_header(name) in accepted:
            return name
    return None


def parse_question_row(row_id: int, prompt: str, options_cell: str, answer_cell: str) -> Optional[Question]:
    """Build one Question from raw cells. Returns None (skip) when the row is unusable."""
    prompt = (prompt or "").strip()
    options = [o.strip() for o in (options_cell or "").split(OPTION_SEPARATOR)]
    options = [o for o in options if o]
    if not prompt or not options:
        logger.warning(f"Row {row_id}: no prompt or options, skipped")
        return None
    answer = (answer_cell or "").strip()
    if answer not in options:
        logger.warning(f"Row {row_id}: correct answer {answer!r} matches no option, skipped")
        return None
    return Question(id=row_id, prompt=prompt, options=tuple(options), correct_answer=options.index(answer) + 1)


def parse_question_csv(text: str) -> List[Question]:
    """
    Parse a CSV question document.

    Raises:
        MalformedSource: header lacks the prompt, options or correct-answer column
    """
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    fieldnames = reader.fieldnames or []
    prompt_col = _find_column(fieldnames, PROMPT_HEADERS)
    options_col = _find_column(fieldnames, OPTIONS_HEADERS)
    answer_col = _find_column(fieldnames, ANSWER_HEADERS)
    missing = [label for label, col in (("question", prompt_col), ("options", options_col), ("correct answer", answer_col)) if col is None]
    if missing:
        raise MalformedSource(f"Question sheet is missing column(s): {', '.join(missing)}")

    questions = []
    skipped = 0
    for row in reader:
        q = parse_question_row(len(questions) + skipped + 1, row.get(prompt_col), row.get(options_col), row.get(answer_col))
        if q is None:
            skipped += 1
            continue
        questions.append(q)
    logger.info(f"Parsed {len(questions)} questions ({skipped} rows skipped)")
    return questions


def load_question_pool(path: Path) -> List[Question]:
    """Read the bundled pool (JSON list of {question, options, correct_answer})."""
    with Path(path).open("r", encoding="utf-8") as f:
        raw = json.load(f)
    pool = []
    for i, item in enumerate(raw, start=1):
        data: Dict = dict(item)
        data.setdefault("id", i)
        pool.append(Question.from_dict(data))
    return pool


class QuestionLoader:
    """Acquires an ordered batch of questions for an exam definition."""

    def __init__(
        self,
        http: Optional[requests.Session] = None,
        timeout: float = 15.0,
        max_retries: int = 2,
        fallback_path: Path = DEFAULT_FALLBACK_POOL,
        rng: Optional[random.Random] = None,
        sleep=time.sleep,
    ):
        self.http = http or requests.Session()
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.fallback_path = Path(fallback_path)
        self.rng = rng or random.Random()
        self.sleep = sleep
        self.last_source: Optional[str] = None

    def fetch_document(self, url: str) -> str:
        """GET the question sheet with retry and backoff. Raises QuestionFetchError."""
        if not url:
            raise QuestionFetchError("Exam has no question source configured")
        url = to_csv_export_url(url)
        last_error = None
        for attempt in range(self.max_retries):
            try:
                response = self.http.get(url, headers={"User-Agent": USER_AGENT}, timeout=self.timeout)
            except requests.RequestException as e:
                last_error = e
                logger.warning(f"Attempt {attempt + 1}/{self.max_retries} failed for {url}: {e}")
                if attempt < self.max_retries - 1:
                    self.sleep(2 ** attempt)
                continue
            if not 200 <= response.status_code < 300:
                # Server answered; retrying will not change a 4xx/5xx sheet
                raise QuestionFetchError(f"Question source returned HTTP {response.status_code}")
            return response.text
        raise QuestionFetchError(f"Could not reach question source: {last_error}")

    def load(self, exam: ExamDefinition) -> List[Question]:
        """Return at most exam.question_count questions. Never raises."""
        try:
            questions = parse_question_csv(self.fetch_document(exam.question_source_url))
            if questions:
                self.rng.shuffle(questions)
                self.last_source = "remote"
                return questions[: exam.question_count]
            logger.warning(f"Question sheet for {exam.id} produced no valid questions")
        except (QuestionFetchError, MalformedSource, csv.Error) as e:
            logger.warning(f"Question sheet for {exam.id} unusable: {e}")
        return self.load_fallback(exam.question_count)

    def load_fallback(self, count: int) -> List[Question]:
        """Bundled pool, shuffled, truncated and renumbered 1..n."""
        self.last_source = "fallback"
        try:
            pool = load_question_pool(self.fallback_path)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Fallback question pool {self.fallback_path} unusable: {e}")
            return []
        self.rng.shuffle(pool)
        picked = pool[: max(0, count)]
        logger.info(f"Using {len(picked)} questions from the bundled pool")
        return [
            Question(id=i, prompt=q.prompt, options=q.options, correct_answer=q.correct_answer)
            for i, q in enumerate(picked, start=1)
        ]
