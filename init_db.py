"""Print the Supabase schema for the remote result store."""
import os

from dotenv import load_dotenv

load_dotenv()

SUPABASE_URL = os.getenv("SUPABASE_URL")
RESULTS_TABLE = os.getenv("EXAM_RESULTS_TABLE", "test_results")

# SQL schema
SCHEMA_SQL = f"""
-- One row per submitted exam session; upserted by test_id
CREATE TABLE IF NOT EXISTS {RESULTS_TABLE} (
    test_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    exam_id TEXT NOT NULL,
    answers JSONB NOT NULL DEFAULT '[]',
    score DECIMAL(5,2) NOT NULL,
    correct_count INT NOT NULL,
    total_questions INT NOT NULL,
    timestamp BIGINT NOT NULL,
    review JSONB NOT NULL DEFAULT '[]',
    proctoring_violations INT DEFAULT 0,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_{RESULTS_TABLE}_user_id ON {RESULTS_TABLE}(user_id);
CREATE INDEX IF NOT EXISTS idx_{RESULTS_TABLE}_user_exam ON {RESULTS_TABLE}(user_id, exam_id);

-- Users only see and write their own results
ALTER TABLE {RESULTS_TABLE} ENABLE ROW LEVEL SECURITY;
CREATE POLICY {RESULTS_TABLE}_select_own ON {RESULTS_TABLE}
    FOR SELECT USING (auth.uid()::text = user_id);
CREATE POLICY {RESULTS_TABLE}_upsert_own ON {RESULTS_TABLE}
    FOR INSERT WITH CHECK (auth.uid()::text = user_id);
CREATE POLICY {RESULTS_TABLE}_update_own ON {RESULTS_TABLE}
    FOR UPDATE USING (auth.uid()::text = user_id);
"""


if __name__ == "__main__":
    print("Remote result store schema")
    print(f"URL: {SUPABASE_URL or '(SUPABASE_URL not set)'}")
    statements = [s.strip() for s in SCHEMA_SQL.split(";") if s.strip()]
    for i, stmt in enumerate(statements, 1):
        first = next(line for line in stmt.splitlines() if not line.startswith("--"))
        print(f"  {i}/{len(statements)} {first[:60]}...")
    print("\nThe Supabase client cannot run DDL; paste this into the Supabase SQL Editor:")
    print(SCHEMA_SQL)
