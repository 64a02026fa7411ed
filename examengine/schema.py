"""
SQL for the tables the engine writes to and the RPC helpers it calls.

Content tables (exam_schedule, tests, questions, students) belong to the
authoring side and are only referenced here.
"""

RESULTS_SCHEMA_SQL = """
-- Dedicated per-type results
CREATE TABLE IF NOT EXISTS unit_exam_results (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    student_id UUID REFERENCES students(id) ON DELETE CASCADE,
    test_id UUID REFERENCES tests(id) ON DELETE SET NULL,
    exam_id UUID REFERENCES exam_schedule(id) ON DELETE SET NULL,
    total_points INT,
    total_score INT,
    status TEXT DEFAULT 'completed',
    completion_time TIMESTAMPTZ DEFAULT NOW(),
    answers JSONB,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS toefl_exam_results (LIKE unit_exam_results INCLUDING ALL);

-- Shared results / live statistics, one row per student, exam and type
CREATE TABLE IF NOT EXISTS exam_results (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    student_id UUID NOT NULL,
    test_id UUID,
    exam_id UUID,
    exam_type TEXT NOT NULL,
    listening_score INT DEFAULT 0,
    structure_score INT DEFAULT 0,
    reading_score INT DEFAULT 0,
    total_score INT DEFAULT 0,
    status TEXT,
    completion_time TIMESTAMPTZ,
    taken_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW(),
    UNIQUE (student_id, exam_id, exam_type)
);

CREATE TABLE IF NOT EXISTS student_answers (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    student_id UUID NOT NULL,
    exam_id UUID NOT NULL,
    question_id UUID NOT NULL,
    answer TEXT,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW(),
    UNIQUE (student_id, exam_id, question_id)
);

CREATE TABLE IF NOT EXISTS student_progress (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    student_id UUID NOT NULL,
    exam_id UUID NOT NULL,
    sections_completed TEXT[] DEFAULT '{}',
    last_activity TIMESTAMPTZ DEFAULT NOW(),
    UNIQUE (student_id, exam_id)
);

CREATE INDEX IF NOT EXISTS idx_unit_exam_results_student ON unit_exam_results(student_id);
CREATE INDEX IF NOT EXISTS idx_unit_exam_results_exam ON unit_exam_results(exam_id);
CREATE INDEX IF NOT EXISTS idx_exam_results_student ON exam_results(student_id);
CREATE INDEX IF NOT EXISTS idx_student_answers_attempt ON student_answers(student_id, exam_id);
"""

# Foreign keys with lenient delete behaviour on the dedicated results tables.
RELATIONSHIP_REPAIR_SQL = """
ALTER TABLE IF EXISTS {table}
  DROP CONSTRAINT IF EXISTS {table}_test_id_fkey,
  ADD CONSTRAINT {table}_test_id_fkey FOREIGN KEY (test_id) REFERENCES tests(id) ON DELETE SET NULL;

ALTER TABLE IF EXISTS {table}
  DROP CONSTRAINT IF EXISTS {table}_student_id_fkey,
  ADD CONSTRAINT {table}_student_id_fkey FOREIGN KEY (student_id) REFERENCES students(id) ON DELETE CASCADE;

ALTER TABLE IF EXISTS {table}
  DROP CONSTRAINT IF EXISTS {table}_exam_id_fkey,
  ADD CONSTRAINT {table}_exam_id_fkey FOREIGN KEY (exam_id) REFERENCES exam_schedule(id) ON DELETE SET NULL;
"""

# run_sql executes one data statement with a text[] of params ($1[1], $1[2], ...)
# and returns its rows as a jsonb array. exec_sql runs DDL scripts.
RUN_SQL_FUNCTION_SQL = """
CREATE OR REPLACE FUNCTION public.run_sql(query text, params text[] DEFAULT '{}')
RETURNS jsonb AS $fn$
DECLARE
    result jsonb;
BEGIN
    EXECUTE format('WITH t AS (%s) SELECT coalesce(jsonb_agg(t), ''[]''::jsonb) FROM t', query)
        INTO result USING params;
    RETURN result;
END;
$fn$ LANGUAGE plpgsql SECURITY DEFINER;
"""

EXEC_SQL_FUNCTION_SQL = """
CREATE OR REPLACE FUNCTION public.exec_sql(query text)
RETURNS void AS $fn$
BEGIN
    EXECUTE query;
END;
$fn$ LANGUAGE plpgsql SECURITY DEFINER;
"""

ENSURE_RUN_SQL_SQL = """
DO $do$
BEGIN
  IF NOT EXISTS (SELECT 1 FROM pg_proc WHERE proname = 'run_sql') THEN
    EXECUTE $body$""" + RUN_SQL_FUNCTION_SQL + """$body$;
  END IF;
END $do$;
"""


def relationship_repair_sql(*tables: str) -> str:
    return "\n".join(RELATIONSHIP_REPAIR_SQL.format(table=t) for t in tables)


def full_schema_sql(*result_tables: str) -> str:
    """Everything init_db applies, in order."""
    return "\n".join([
        EXEC_SQL_FUNCTION_SQL,
        RUN_SQL_FUNCTION_SQL,
        RESULTS_SCHEMA_SQL,
        relationship_repair_sql(*result_tables),
    ])
