"""Progressive session, pending and cascade tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SESSION_STATUS = ("initialized", "processing", "reconciling", "completed", "failed")
CHUNK_STATUS = ("completed", "failed")
PENDING_STATUS = ("pending", "completed", "abandoned")
DATE_SOURCE = ("ai_extracted", "file_metadata", "upload_date")
QUALITY_TIER = ("low", "medium", "high", "verified")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Create progressive extraction schema."""
    op.create_table(
        "progressive_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("document_ref", sa.String(1024), nullable=True),
        sa.Column("total_pages", sa.Integer(), nullable=False),
        sa.Column("chunk_size", sa.Integer(), nullable=False),
        sa.Column("total_chunks", sa.Integer(), nullable=False),
        sa.Column("current_chunk", sa.Integer(), server_default="0"),
        sa.Column("status", sa.Enum(*SESSION_STATUS, name="sessionstatus"), nullable=False),
        sa.Column("handoff", postgresql.JSONB(), nullable=True),
        sa.Column("total_input_tokens", sa.Integer(), server_default="0"),
        sa.Column("total_output_tokens", sa.Integer(), server_default="0"),
        sa.Column("total_cost", sa.Float(), server_default="0"),
        sa.Column("final_encounter_count", sa.Integer(), server_default="0"),
        sa.Column("pending_count_unresolved", sa.Integer(), server_default="0"),
        sa.Column("abandoned_group_count", sa.Integer(), server_default="0"),
        sa.Column("requires_manual_review", sa.Boolean(), server_default=sa.false()),
        sa.Column("review_reasons", postgresql.JSONB(), server_default="[]"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_progressive_sessions_status", "progressive_sessions", ["status"])

    op.create_table(
        "chunk_results",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("progressive_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("chunk_number", sa.Integer(), nullable=False),
        sa.Column("page_start", sa.Integer(), nullable=False),
        sa.Column("page_end", sa.Integer(), nullable=False),
        sa.Column("status", sa.Enum(*CHUNK_STATUS, name="chunkstatus"), nullable=False),
        sa.Column("attempt", sa.Integer(), server_default="1"),
        sa.Column("model_name", sa.String(255), nullable=True),
        sa.Column("input_tokens", sa.Integer(), server_default="0"),
        sa.Column("output_tokens", sa.Integer(), server_default="0"),
        sa.Column("cost", sa.Float(), server_default="0"),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), server_default="0"),
        sa.Column("handoff_received", postgresql.JSONB(), nullable=True),
        sa.Column("handoff_sent", postgresql.JSONB(), nullable=True),
        sa.Column("encounters_completed", sa.Integer(), server_default="0"),
        sa.Column("pendings_created", sa.Integer(), server_default="0"),
        sa.Column("cascading_count", sa.Integer(), server_default="0"),
        sa.Column("continues_count", sa.Integer(), server_default="0"),
        sa.Column("cascade_ids", postgresql.JSONB(), server_default="[]"),
        sa.Column("raw_response", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("session_id", "chunk_number", name="uq_chunk_results_session_chunk"),
    )

    op.create_table(
        "pending_encounters",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("progressive_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("pending_id", sa.String(64), nullable=False),
        sa.Column("temp_id", sa.String(255), nullable=True),
        sa.Column("chunk_number", sa.Integer(), nullable=False),
        sa.Column("last_seen_chunk", sa.Integer(), nullable=False),
        sa.Column("encounter_index", sa.Integer(), nullable=False),
        sa.Column("cascade_id", sa.String(255), nullable=True),
        sa.Column("origin_chunk", sa.Integer(), nullable=False),
        sa.Column("origin_index", sa.Integer(), nullable=False),
        sa.Column("is_cascading", sa.Boolean(), server_default=sa.false()),
        sa.Column("continues_previous", sa.Boolean(), server_default=sa.false()),
        sa.Column("expected_continuation", sa.Text(), nullable=True),
        sa.Column("encounter", postgresql.JSONB(), nullable=False),
        sa.Column("page_ranges", postgresql.JSONB(), server_default="[]"),
        sa.Column("context_snippet", sa.Text(), nullable=True),
        sa.Column("confidence", sa.Float(), server_default="0.5"),
        sa.Column("status", sa.Enum(*PENDING_STATUS, name="pendingstatus"), nullable=False),
        sa.Column("requires_review", sa.Boolean(), server_default=sa.false()),
        sa.Column("review_reason", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("reconciled_to", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("reconciled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "session_id", "pending_id", name="uq_pending_encounters_session_pending"
        ),
    )
    op.create_index(
        "ix_pending_encounters_session_status", "pending_encounters", ["session_id", "status"]
    )
    op.create_index("ix_pending_encounters_cascade", "pending_encounters", ["cascade_id"])

    op.create_table(
        "cascade_chains",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("cascade_id", sa.String(255), nullable=False),
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("progressive_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("origin_chunk", sa.Integer(), nullable=False),
        sa.Column("origin_index", sa.Integer(), nullable=False),
        sa.Column("encounter_type", sa.String(255), nullable=False),
        sa.Column("pendings_count", sa.Integer(), server_default="1"),
        sa.Column("last_chunk", sa.Integer(), nullable=False),
        sa.Column("final_encounter_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("is_complete", sa.Boolean(), server_default=sa.false()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("cascade_id", name="uq_cascade_chains_cascade_id"),
    )
    op.create_index("ix_cascade_chains_session", "cascade_chains", ["session_id"])

    op.create_table(
        "final_encounters",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("progressive_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("cascade_id", sa.String(255), nullable=True),
        sa.Column("encounter_type", sa.String(255), nullable=False),
        sa.Column("start", postgresql.JSONB(), nullable=False),
        sa.Column("end", postgresql.JSONB(), nullable=False),
        sa.Column("position_confidence", sa.Float(), server_default="0.5"),
        sa.Column("page_ranges", postgresql.JSONB(), server_default="[]"),
        sa.Column("encounter_start_date", sa.String(10), nullable=True),
        sa.Column("encounter_end_date", sa.String(10), nullable=True),
        sa.Column("date_source", sa.Enum(*DATE_SOURCE, name="datesource"), nullable=True),
        sa.Column("is_real_world_visit", sa.Boolean(), server_default=sa.false()),
        sa.Column("patient_name", sa.Text(), nullable=True),
        sa.Column("patient_date_of_birth", sa.String(10), nullable=True),
        sa.Column("patient_address", sa.Text(), nullable=True),
        sa.Column("identifiers", postgresql.JSONB(), server_default="[]"),
        sa.Column("provider_name", sa.Text(), nullable=True),
        sa.Column("facility_name", sa.Text(), nullable=True),
        sa.Column("department", sa.Text(), nullable=True),
        sa.Column("provider_role", sa.Text(), nullable=True),
        sa.Column("chief_complaint", sa.Text(), nullable=True),
        sa.Column("disposition", sa.Text(), nullable=True),
        sa.Column("diagnoses", postgresql.JSONB(), server_default="[]"),
        sa.Column("procedures", postgresql.JSONB(), server_default="[]"),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("confidence", sa.Float(), server_default="0.5"),
        sa.Column("quality_tier", sa.Enum(*QUALITY_TIER, name="qualitytier"), nullable=False),
        sa.Column("quality_metadata", postgresql.JSONB(), server_default="{}"),
        sa.Column("source_pending_ids", postgresql.JSONB(), server_default="[]"),
        sa.Column("chunk_count", sa.Integer(), server_default="1"),
        *_timestamps(),
        sa.UniqueConstraint("cascade_id", name="uq_final_encounters_cascade_id"),
    )
    op.create_index("ix_final_encounters_session", "final_encounters", ["session_id"])


def downgrade() -> None:
    """Drop progressive extraction schema."""
    op.drop_table("final_encounters")
    op.drop_table("cascade_chains")
    op.drop_table("pending_encounters")
    op.drop_table("chunk_results")
    op.drop_table("progressive_sessions")

    for enum_name in ("qualitytier", "datesource", "pendingstatus", "chunkstatus", "sessionstatus"):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
