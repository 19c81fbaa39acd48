"""
Remote result store on Supabase.
Mirrors TestResults into the `test_results` table and reads a user's history back.
Every call runs with the user's bearer token so row-level security applies.
"""
import logging
from typing import Dict, List, Optional

from postgrest.exceptions import APIError
from supabase import Client, create_client

from .config import Settings
from .errors import CREDENTIAL_HINT, RemotePersistenceFailure
from .models import TestResult

logger = logging.getLogger(__name__)

# PostgREST / Postgres codes that mean the credential was rejected
AUTH_ERROR_CODES = {"PGRST300", "PGRST301", "PGRST302", "42501", "401", "403"}


def get_supabase(settings: Optional[Settings] = None) -> Client:
    settings = settings or Settings.from_env()
    if not settings.remote_configured:
        raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set")
    return create_client(settings.supabase_url, settings.supabase_key)


def _is_auth_error(code: Optional[str], message: str) -> bool:
    return (code or "") in AUTH_ERROR_CODES or "jwt" in (message or "").lower()


def _wrap_api_error(action: str, e: APIError) -> RemotePersistenceFailure:
    code = str(e.code) if e.code is not None else None
    message = e.message or str(e)
    if _is_auth_error(code, message):
        return RemotePersistenceFailure(
            f"{action}: your session has expired or is not authorised ({message})",
            hint=CREDENTIAL_HINT,
            auth_failure=True,
            code=code,
        )
    return RemotePersistenceFailure(f"{action}: {message}", code=code)


class RemoteResultStore:
    """Wrapper around the Supabase client with result-specific operations."""

    def __init__(self, client: Client, table: str = "test_results"):
        self.client = client
        self.table = table

    def _authorise(self, token: Optional[str]) -> None:
        if not token:
            raise RemotePersistenceFailure("No credential available for the result store", hint=CREDENTIAL_HINT, auth_failure=True)
        self.client.postgrest.auth(token.strip())

    def fetch_all_results(self, user_id: str, token: Optional[str]) -> List[TestResult]:
        """All results stored remotely for one user, oldest first."""
        self._authorise(token)
        try:
            response = (
                self.client.table(self.table)
                .select("*")
                .eq("user_id", str(user_id))
                .order("timestamp")
                .execute()
            )
        except APIError as e:
            raise _wrap_api_error("Fetching results failed", e) from e
        except Exception as e:
            raise RemotePersistenceFailure(f"Could not reach the result store: {e}", hint=CREDENTIAL_HINT) from e
        rows: List[Dict] = response.data or []
        results = []
        for row in rows:
            try:
                results.append(TestResult.from_dict(row))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed remote result row: {e}")
        logger.info(f"Fetched {len(results)} remote results for user {user_id}")
        return results

    def submit_result(self, result: TestResult, token: Optional[str]) -> None:
        """Upsert one result keyed by test_id."""
        self._authorise(token)
        try:
            self.client.table(self.table).upsert(result.to_dict(), on_conflict="test_id").execute()
        except APIError as e:
            raise _wrap_api_error("Saving result failed", e) from e
        except Exception as e:
            raise RemotePersistenceFailure(f"Could not reach the result store: {e}", hint=CREDENTIAL_HINT) from e
        logger.info(f"Mirrored result {result.test_id} to {self.table}")
