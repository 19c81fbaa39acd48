"""Check a CSV question sheet and optionally turn it into a bundled fallback pool."""
import argparse
import json
import logging
from pathlib import Path

from exam_session.config import DEFAULT_FALLBACK_POOL, Settings
from exam_session.errors import MalformedSource, QuestionFetchError
from exam_session.loader import QuestionLoader, load_question_pool, parse_question_csv

logger = logging.getLogger(__name__)


def read_source(source: str, loader: QuestionLoader) -> str:
    """Local path or URL -> CSV text."""
    path = Path(source)
    if path.exists():
        return path.read_text(encoding="utf-8")
    return loader.fetch_document(source)


def to_pool_rows(questions) -> list[dict]:
    return [{"question": q.prompt, "options": list(q.options), "correct_answer": q.correct_answer} for q in questions]


def run_import(source: str, out: Path | None = None, merge: bool = False, dry_run: bool = False) -> int:
    settings = Settings.from_env()
    loader = QuestionLoader(timeout=settings.fetch_timeout, max_retries=settings.fetch_retries)
    try:
        questions = parse_question_csv(read_source(source, loader))
    except (QuestionFetchError, MalformedSource) as e:
        print(f"Source unusable: {e}")
        return 1
    print(f"Parsed {len(questions)} valid questions from {source}")
    if questions:
        print("Sample question:", questions[0].to_dict())
    if dry_run or out is None:
        return 0 if questions else 1

    rows = to_pool_rows(questions)
    if merge and out.exists():
        existing = to_pool_rows(load_question_pool(out))
        seen = {r["question"] for r in existing}
        added = [r for r in rows if r["question"] not in seen]
        logger.info("Merging %d new questions into %d existing", len(added), len(existing))
        rows = existing + added
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w", encoding="utf-8") as f:
        json.dump(rows, f, indent=2, ensure_ascii=False)
    print(f"Wrote {len(rows)} questions to {out}")
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    parser = argparse.ArgumentParser(description="Validate a CSV question sheet (Question, Options, Correct Answer).")
    parser.add_argument("source", help="CSV file path or URL (Google Sheets links are converted to CSV export)")
    parser.add_argument("--out", type=Path, default=None, help=f"Write the parsed questions as a pool JSON (e.g. {DEFAULT_FALLBACK_POOL})")
    parser.add_argument("--merge", action="store_true", help="Append to the pool at --out instead of replacing it")
    parser.add_argument("--dry-run", action="store_true", help="Parse only, do not write")
    args = parser.parse_args()
    raise SystemExit(run_import(args.source, out=args.out, merge=args.merge, dry_run=args.dry_run))
