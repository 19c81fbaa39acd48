"""Exam player for the terminal: pick an exam from a catalog, take it, see the review."""
import argparse
import logging
import sys
from pathlib import Path

from exam_session import events
from exam_session.clock import SessionClock
from exam_session.config import Settings, configure_logging
from exam_session.database import RemoteResultStore, get_supabase
from exam_session.errors import (
    DeniedByGovernor,
    ExamSessionError,
    LedgerLocked,
    MissingContext,
    RemotePersistenceFailure,
    SubmissionDeclined,
)
from exam_session.events import Notifier
from exam_session.governor import AttemptGovernor
from exam_session.loader import QuestionLoader
from exam_session.models import UNANSWERED, ExamDefinition, TestResult, UserContext, load_catalog
from exam_session.session import ExamSession, SessionState
from exam_session.storage import JsonFileStore, ResultRepository
from exam_session.submission import SubmissionPipeline

logger = logging.getLogger(__name__)

DEFAULT_CATALOG = Path(__file__).resolve().parent / "exam_session" / "data" / "sample_catalog.json"
# Remaining-time marks (seconds) announced while the exam runs
TIME_WARNINGS = {600, 300, 60, 30, 10}

HELP = "[1-n] answer  n next  p previous  g <k> go to question k  s submit  q leave (resume later)"


def confirm_unanswered(unanswered: int) -> bool:
    reply = input(f"{unanswered} question(s) unanswered. Submit anyway? [y/N] ")
    return reply.strip().lower() in ("y", "yes")


def format_seconds(seconds) -> str:
    if seconds is None:
        return "--:--"
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


def print_question(session: ExamSession) -> None:
    q = session.current_question
    chosen = session.ledger.get(q.id)
    summary = session.get_session_summary()
    print()
    print(
        f"Question {summary['current_question']}/{summary['total_questions']}   "
        f"answered {summary['questions_answered']}   time left {format_seconds(summary['time_remaining_sec'])}"
    )
    if summary["violations"]:
        print(f"Focus violations: {summary['violations']}/{session.MAX_FOCUS_VIOLATIONS}")
    print(q.prompt)
    for i, option in enumerate(q.options):
        marker = "*" if chosen == i else " "
        print(f"  {marker} {i + 1}. {option}")


def print_review(result: TestResult, exam: ExamDefinition) -> None:
    passed = result.score >= exam.pass_score
    print()
    print(f"Score: {result.score}% ({result.correct_count}/{result.total_questions}) - {'PASSED' if passed else 'NOT PASSED'}")
    if result.proctoring_violations:
        print(f"Proctoring violations: {result.proctoring_violations}")
    for i, item in enumerate(result.review, 1):
        if item.user_answer == UNANSWERED:
            yours = "(not answered)"
        else:
            yours = item.options[item.user_answer]
        status = "ok" if item.user_answer == item.correct_answer else "x"
        print(f"{i:>3}. [{status}] {item.prompt}")
        print(f"       yours: {yours}   correct: {item.options[item.correct_answer]}")


def wire_notifications(notifier: Notifier) -> None:
    def on_tick(remaining):
        if remaining in TIME_WARNINGS:
            print(f"\n** {format_seconds(remaining)} remaining **")

    notifier.subscribe(events.TICK, on_tick)
    notifier.subscribe(events.EXPIRED, lambda _: print("\n** Time is up. Submitting your answers. **"))
    notifier.subscribe(events.WARNING, lambda msg: print(f"\n! {msg}"))
    notifier.subscribe(events.VIOLATION, lambda v: print(f"\n! {v['message']}"))
    notifier.subscribe(events.SYNC_FAILED, lambda p: print(f"\n! Result saved on this device but not uploaded: {p['error']}"))


def build_remote(settings: Settings):
    if not settings.remote_configured:
        logger.info("SUPABASE_URL/SUPABASE_KEY not set; results stay on this device")
        return None
    return RemoteResultStore(get_supabase(settings), table=settings.results_table)


def run_session(session: ExamSession) -> int:
    try:
        loaded = session.load_session()
    except DeniedByGovernor as e:
        print(f"Cannot start {session.exam.name}: {e.message} [{e.reason.value}]")
        return 2
    except MissingContext as e:
        print(f"Cannot start: {e}")
        return 2

    if loaded.resumed:
        print(f"Resuming {session.exam.name}.")
    print(f"{session.exam.name}: {len(loaded.questions)} questions, {format_seconds(loaded.initial_seconds_remaining)} on the clock.")
    print(HELP)

    while session.status != SessionState.SUBMITTED:
        print_question(session)
        try:
            command = input("> ").strip().lower()
        except EOFError:
            command = "q"
        if session.status == SessionState.SUBMITTED:
            break
        try:
            if command.isdigit():
                session.select_and_advance(session.current_question.id, int(command) - 1)
            elif command == "n":
                session.next()
            elif command == "p":
                session.previous()
            elif command.startswith("g "):
                session.jump_to(int(command[2:]) - 1)
            elif command == "s":
                session.submit()
            elif command == "q":
                session.close()
                print("Progress saved. The clock keeps running until you come back.")
                return 0
            else:
                print(HELP)
        except SubmissionDeclined as e:
            print(e.message)
        except LedgerLocked:
            if session.status == SessionState.SUBMITTED:
                break
            print("Answers are locked. Press s to save your result again.")
        except (IndexError, KeyError, ValueError) as e:
            print(f"Invalid input: {e}")
        except ExamSessionError as e:
            print(f"Error: {e}")
            if session.status != SessionState.COMMIT_FAILED:
                return 1

    print_review(session.result, session.exam)
    if session.pipeline.last_sync is not None:
        session.pipeline.last_sync.join(timeout=10)
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Take a timed exam in the terminal.")
    parser.add_argument("--catalog", type=Path, default=DEFAULT_CATALOG, help=f"Exam catalog JSON (default: {DEFAULT_CATALOG})")
    parser.add_argument("--exam", help="Exam id to take")
    parser.add_argument("--user", default="local-user", help="User id results are stored under")
    parser.add_argument("--token", default=None, help="Bearer token for the remote result store")
    parser.add_argument("--subscribed", action="store_true", help="Treat the user as subscribed (no practice quota)")
    parser.add_argument("--list", action="store_true", help="List exams in the catalog and exit")
    parser.add_argument("--history", action="store_true", help="Show stored results for the user and exit")
    parser.add_argument("--sync", action="store_true", help="Sync results with the remote store before starting")
    args = parser.parse_args()

    settings = Settings.from_env()
    configure_logging(settings)
    catalog = load_catalog(args.catalog)

    if args.list:
        for exam in catalog:
            kind = "practice" if exam.is_practice else "certification"
            print(f"{exam.id:<20} {exam.name} ({kind}, {exam.question_count} q, {exam.duration_minutes} min, pass {exam.pass_score}%)")
        return 0

    store = JsonFileStore(settings.store_path)
    results = ResultRepository(store)
    user = UserContext(user_id=args.user, token=args.token, is_subscribed=args.subscribed)
    remote = build_remote(settings)

    if args.sync and remote is not None:
        try:
            results.sync_results(user, remote)
        except RemotePersistenceFailure as e:
            print(f"Sync failed: {e}")

    if args.history:
        for r in results.list_for_user(user.user_id):
            print(f"{r.test_id}  {r.exam_id:<20} {r.score:>6}%  ({r.correct_count}/{r.total_questions})")
        return 0

    exam = next((e for e in catalog if e.id == args.exam), None)
    if exam is None:
        parser.error(f"--exam must be one of: {', '.join(e.id for e in catalog)}")

    notifier = Notifier()
    wire_notifications(notifier)
    session = ExamSession(
        exam=exam,
        user=user,
        store=store,
        loader=QuestionLoader(timeout=settings.fetch_timeout, max_retries=settings.fetch_retries, fallback_path=settings.fallback_pool),
        pipeline=SubmissionPipeline(results, remote=remote, notifier=notifier, confirm=confirm_unanswered),
        clock=SessionClock(store),
        governor=AttemptGovernor(catalog),
        notifier=notifier,
    )
    return run_session(session)


if __name__ == "__main__":
    sys.exit(main())
