"""Baseline schema for the progression and reward engine.

Creates users, the cohort content hierarchy (cohorts, weeks, modules,
lessons, topics), week-scoped activities (quizzes, assignments, live
classes), per-student progress and completion records, and the coin
ledger (coin_transactions + coin_balances).

Revision ID: 001_progression_baseline
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_progression_baseline"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


_COMPLETION_COLUMNS = """
            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            time_spent_seconds INTEGER NOT NULL DEFAULT 0,
            completion_percentage NUMERIC(5, 2) NOT NULL DEFAULT 0,
            completion_data JSONB,
            coins_awarded INTEGER NOT NULL DEFAULT 0"""


def upgrade() -> None:
    # --- Users ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id BIGSERIAL PRIMARY KEY,
            email VARCHAR(320) UNIQUE NOT NULL,
            name VARCHAR(255) NOT NULL DEFAULT '',
            role VARCHAR(16) NOT NULL DEFAULT 'student',
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # --- Content hierarchy ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS cohorts (
            id BIGSERIAL PRIMARY KEY,
            title VARCHAR(255) NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'draft',
            start_date DATE,
            end_date DATE,
            capacity INTEGER,
            enrolled_count INTEGER NOT NULL DEFAULT 0
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS weeks (
            id BIGSERIAL PRIMARY KEY,
            cohort_id BIGINT NOT NULL REFERENCES cohorts(id) ON DELETE CASCADE,
            week_number INTEGER NOT NULL,
            title VARCHAR(255) NOT NULL DEFAULT '',
            unlock_rules JSONB,
            drip_days INTEGER NOT NULL DEFAULT 0,
            completion_coin_reward INTEGER NOT NULL DEFAULT 0,
            CONSTRAINT uq_weeks_cohort_number UNIQUE (cohort_id, week_number)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS modules (
            id BIGSERIAL PRIMARY KEY,
            week_id BIGINT NOT NULL REFERENCES weeks(id) ON DELETE CASCADE,
            "order" INTEGER NOT NULL DEFAULT 0,
            title VARCHAR(255) NOT NULL DEFAULT '',
            coin_reward INTEGER NOT NULL DEFAULT 0
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS lessons (
            id BIGSERIAL PRIMARY KEY,
            module_id BIGINT NOT NULL REFERENCES modules(id) ON DELETE CASCADE,
            "order" INTEGER NOT NULL DEFAULT 0,
            title VARCHAR(255) NOT NULL DEFAULT '',
            lesson_blocks JSONB,
            min_time_required_seconds INTEGER,
            coin_reward INTEGER NOT NULL DEFAULT 0
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS topics (
            id BIGSERIAL PRIMARY KEY,
            lesson_id BIGINT NOT NULL REFERENCES lessons(id) ON DELETE CASCADE,
            "order" INTEGER NOT NULL DEFAULT 0,
            title VARCHAR(255) NOT NULL DEFAULT '',
            coin_reward INTEGER NOT NULL DEFAULT 0,
            min_time_required_seconds INTEGER,
            completion_requirements JSONB
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_weeks_cohort ON weeks(cohort_id)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_modules_week ON modules(week_id)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_lessons_module ON lessons(module_id)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_topics_lesson ON topics(lesson_id)")

    # --- Week-scoped activities ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS quizzes (
            id BIGSERIAL PRIMARY KEY,
            week_id BIGINT NOT NULL REFERENCES weeks(id) ON DELETE CASCADE,
            title VARCHAR(255) NOT NULL DEFAULT '',
            passing_score INTEGER NOT NULL DEFAULT 70,
            max_attempts INTEGER,
            coin_reward INTEGER NOT NULL DEFAULT 0
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS quiz_attempts (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            quiz_id BIGINT NOT NULL REFERENCES quizzes(id) ON DELETE CASCADE,
            attempt_number INTEGER NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'completed',
            score_percentage NUMERIC(5, 2) NOT NULL DEFAULT 0,
            passed BOOLEAN NOT NULL DEFAULT false,
            answers JSONB,
            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            CONSTRAINT uq_quiz_attempts_user_quiz_attempt UNIQUE (user_id, quiz_id, attempt_number)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS assignments (
            id BIGSERIAL PRIMARY KEY,
            week_id BIGINT NOT NULL REFERENCES weeks(id) ON DELETE CASCADE,
            title VARCHAR(255) NOT NULL DEFAULT '',
            coin_reward INTEGER NOT NULL DEFAULT 0
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS assignment_submissions (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            assignment_id BIGINT NOT NULL REFERENCES assignments(id) ON DELETE CASCADE,
            status VARCHAR(24) NOT NULL DEFAULT 'submitted',
            content JSONB,
            submitted_at TIMESTAMPTZ,
            reviewed_by BIGINT,
            reviewed_at TIMESTAMPTZ,
            feedback TEXT,
            CONSTRAINT uq_submissions_user_assignment UNIQUE (user_id, assignment_id)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS live_classes (
            id BIGSERIAL PRIMARY KEY,
            week_id BIGINT NOT NULL REFERENCES weeks(id) ON DELETE CASCADE,
            title VARCHAR(255) NOT NULL DEFAULT '',
            coin_reward INTEGER NOT NULL DEFAULT 0,
            scheduled_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS live_attendance (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            live_class_id BIGINT NOT NULL REFERENCES live_classes(id) ON DELETE CASCADE,
            attended BOOLEAN NOT NULL DEFAULT false,
            joined_at TIMESTAMPTZ,
            left_at TIMESTAMPTZ,
            attendance_data JSONB,
            CONSTRAINT uq_live_attendance_user_class UNIQUE (user_id, live_class_id)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS lesson_block_completions (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            lesson_id BIGINT NOT NULL REFERENCES lessons(id) ON DELETE CASCADE,
            block_id VARCHAR(64) NOT NULL,
            block_type VARCHAR(16) NOT NULL,
            attempt_number INTEGER NOT NULL DEFAULT 1,
            passed BOOLEAN NOT NULL DEFAULT false,
            score_percentage NUMERIC(5, 2),
            completion_data JSONB,
            completed_at TIMESTAMPTZ,
            CONSTRAINT uq_block_completions_attempt UNIQUE (user_id, lesson_id, block_id, attempt_number)
        )
    """)

    # --- Per-student progress ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS enrollments (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            cohort_id BIGINT NOT NULL REFERENCES cohorts(id) ON DELETE CASCADE,
            status VARCHAR(16) NOT NULL DEFAULT 'active',
            enrolled_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            completion_percentage NUMERIC(5, 2) NOT NULL DEFAULT 0,
            CONSTRAINT uq_enrollments_user_cohort UNIQUE (user_id, cohort_id)
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS week_progress (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            cohort_id BIGINT NOT NULL REFERENCES cohorts(id) ON DELETE CASCADE,
            week_id BIGINT NOT NULL REFERENCES weeks(id) ON DELETE CASCADE,
            completion_percentage NUMERIC(5, 2) NOT NULL DEFAULT 0,
            is_unlocked BOOLEAN NOT NULL DEFAULT false,
            unlocked_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            CONSTRAINT uq_week_progress_user_week UNIQUE (user_id, week_id)
        )
    """)
    op.execute(f"""
        CREATE TABLE IF NOT EXISTS topic_completions (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            topic_id BIGINT NOT NULL REFERENCES topics(id) ON DELETE CASCADE,
            last_position_seconds INTEGER NOT NULL DEFAULT 0,
            completion_method VARCHAR(50) NOT NULL DEFAULT 'manual',{_COMPLETION_COLUMNS},
            CONSTRAINT uq_topic_completions_user_topic UNIQUE (user_id, topic_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_topic_completions_user_pct
        ON topic_completions(user_id, completion_percentage)
    """)
    op.execute(f"""
        CREATE TABLE IF NOT EXISTS lesson_completions (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            lesson_id BIGINT NOT NULL REFERENCES lessons(id) ON DELETE CASCADE,{_COMPLETION_COLUMNS},
            CONSTRAINT uq_lesson_completions_user_lesson UNIQUE (user_id, lesson_id)
        )
    """)
    op.execute(f"""
        CREATE TABLE IF NOT EXISTS module_completions (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            module_id BIGINT NOT NULL REFERENCES modules(id) ON DELETE CASCADE,{_COMPLETION_COLUMNS},
            CONSTRAINT uq_module_completions_user_module UNIQUE (user_id, module_id)
        )
    """)

    # --- Coin ledger ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS coin_balances (
            user_id BIGINT PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
            total_balance BIGINT NOT NULL DEFAULT 0,
            lifetime_earned BIGINT NOT NULL DEFAULT 0,
            lifetime_spent BIGINT NOT NULL DEFAULT 0,
            last_updated TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS coin_transactions (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            transaction_type VARCHAR(16) NOT NULL,
            amount INTEGER NOT NULL,
            source_type VARCHAR(32) NOT NULL,
            source_id BIGINT,
            description TEXT,
            metadata JSONB,
            created_by BIGINT,
            idempotency_key VARCHAR(256) UNIQUE,
            created_at TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_coin_transactions_user_created
        ON coin_transactions(user_id, created_at DESC)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_coin_transactions_source
        ON coin_transactions(source_type, source_id)
    """)


def downgrade() -> None:
    for table in (
        "coin_transactions",
        "coin_balances",
        "module_completions",
        "lesson_completions",
        "topic_completions",
        "week_progress",
        "enrollments",
        "lesson_block_completions",
        "live_attendance",
        "live_classes",
        "assignment_submissions",
        "assignments",
        "quiz_attempts",
        "quizzes",
        "topics",
        "lessons",
        "modules",
        "weeks",
        "cohorts",
        "users",
    ):
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE")
