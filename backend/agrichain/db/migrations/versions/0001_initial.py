"""Create provenance schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

record_status = sa.Enum(
    "active", "inactive", "pending", "verified", "rejected", name="recordstatus"
)
anchor_status = sa.Enum("pending", "confirmed", "failed", "reverted", name="anchorstatus")
verification_method = sa.Enum(
    "data_only", "combined_hash", "blockchain_verify", name="verificationmethod"
)

json_type = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
id_type = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "producers",
        sa.Column("producer_id", sa.String(length=50), nullable=False),
        sa.Column("full_name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=100)),
        sa.Column("phone", sa.String(length=20)),
        sa.Column("address", sa.Text()),
        sa.Column("province", sa.String(length=50)),
        sa.Column("district", sa.String(length=50)),
        sa.Column("ward", sa.String(length=50)),
        sa.Column("certification_level", sa.String(length=50)),
        sa.Column("wallet_address", sa.String(length=42)),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.PrimaryKeyConstraint("producer_id"),
    )

    op.create_table(
        "provenance_records",
        sa.Column("id", id_type, autoincrement=True, nullable=False),
        sa.Column(
            "producer_id",
            sa.String(length=50),
            sa.ForeignKey("producers.producer_id"),
            nullable=False,
        ),
        sa.Column("product", sa.String(length=100), nullable=False),
        sa.Column("location", sa.String(length=200), nullable=False),
        sa.Column("event_date", sa.String(length=40), nullable=False),
        sa.Column("quantity", sa.Numeric(18, 3)),
        sa.Column("quality", sa.String(length=50), server_default="Standard", nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("data_digest", sa.String(length=66), nullable=False),
        sa.Column("combined_digest", sa.String(length=66)),
        sa.Column("transaction_id", sa.String(length=66), nullable=False),
        sa.Column("block_number", id_type),
        sa.Column("anchored_payload", json_type, nullable=False),
        sa.Column("file_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("total_file_size", id_type, server_default="0", nullable=False),
        sa.Column("status", record_status, server_default="active", nullable=False),
        sa.Column("version", sa.Integer(), server_default="1", nullable=False),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_provenance_records_producer_id", "provenance_records", ["producer_id"])
    op.create_index("ix_provenance_records_data_digest", "provenance_records", ["data_digest"])
    op.create_index(
        "ix_provenance_records_combined_digest", "provenance_records", ["combined_digest"]
    )
    op.create_index(
        "ix_provenance_records_transaction_id", "provenance_records", ["transaction_id"]
    )
    op.create_index("ix_provenance_records_status", "provenance_records", ["status"])
    op.create_index("ix_provenance_records_created_at", "provenance_records", ["created_at"])

    op.create_table(
        "ledger_anchors",
        sa.Column("id", id_type, autoincrement=True, nullable=False),
        sa.Column("transaction_id", sa.String(length=66), nullable=False),
        sa.Column(
            "record_id",
            id_type,
            sa.ForeignKey("provenance_records.id", ondelete="SET NULL"),
        ),
        sa.Column("block_number", id_type),
        sa.Column("block_hash", sa.String(length=66)),
        sa.Column("from_address", sa.String(length=42)),
        sa.Column("to_address", sa.String(length=42)),
        sa.Column("gas_used", id_type),
        sa.Column("gas_price", sa.Numeric(38, 0)),
        sa.Column("transaction_fee", sa.Numeric(38, 18), comment="Fee paid in ether"),
        sa.Column("network_name", sa.String(length=50), nullable=False),
        sa.Column("chain_id", id_type),
        sa.Column("status", anchor_status, server_default="pending", nullable=False),
        sa.Column("envelope", json_type),
        sa.Column(
            "submitted_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("confirmed_at", sa.DateTime(timezone=True)),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("transaction_id", name="uq_ledger_anchors_transaction_id"),
    )
    op.create_index("ix_ledger_anchors_record_id", "ledger_anchors", ["record_id"])
    op.create_index("ix_ledger_anchors_status", "ledger_anchors", ["status"])

    op.create_table(
        "file_attachments",
        sa.Column("id", id_type, autoincrement=True, nullable=False),
        sa.Column(
            "record_id",
            id_type,
            sa.ForeignKey("provenance_records.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("original_name", sa.String(length=255), nullable=False),
        sa.Column("stored_name", sa.String(length=255), nullable=False),
        sa.Column("storage_path", sa.String(length=500), nullable=False),
        sa.Column("size_bytes", id_type, nullable=False),
        sa.Column("content_type", sa.String(length=100), nullable=False),
        sa.Column("sha256", sa.String(length=66), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        sa.Column(
            "uploaded_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_file_attachments_record_id", "file_attachments", ["record_id"])
    op.create_index("ix_file_attachments_sha256", "file_attachments", ["sha256"])

    op.create_table(
        "verification_logs",
        sa.Column("id", id_type, autoincrement=True, nullable=False),
        sa.Column(
            "record_id",
            id_type,
            sa.ForeignKey("provenance_records.id", ondelete="RESTRICT"),
        ),
        sa.Column("transaction_id", sa.String(length=66)),
        sa.Column("method", verification_method, nullable=False),
        sa.Column("is_valid", sa.Boolean(), nullable=False),
        sa.Column("stored_digest", sa.String(length=66)),
        sa.Column("current_digest", sa.String(length=66)),
        sa.Column("client_ip", sa.String(length=45)),
        sa.Column("user_agent", sa.Text()),
        sa.Column("details", json_type),
        sa.Column(
            "verified_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_verification_logs_record_id", "verification_logs", ["record_id"])
    op.create_index(
        "ix_verification_logs_transaction_id", "verification_logs", ["transaction_id"]
    )
    op.create_index("ix_verification_logs_verified_at", "verification_logs", ["verified_at"])

    op.create_table(
        "audit_events",
        sa.Column("id", id_type, autoincrement=True, nullable=False),
        sa.Column("subject", sa.String(length=255)),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("resource_type", sa.String(length=100), nullable=False),
        sa.Column("resource_id", sa.String(length=255)),
        sa.Column("metadata", json_type),
        sa.Column("ip_address", sa.String(length=45)),
        sa.Column("user_agent", sa.Text()),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_events_action", "audit_events", ["action"])
    op.create_index("ix_audit_events_resource", "audit_events", ["resource_type", "resource_id"])
    op.create_index("ix_audit_events_created_at", "audit_events", ["created_at"])


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("verification_logs")
    op.drop_table("file_attachments")
    op.drop_table("ledger_anchors")
    op.drop_table("provenance_records")
    op.drop_table("producers")
    verification_method.drop(op.get_bind(), checkfirst=True)
    anchor_status.drop(op.get_bind(), checkfirst=True)
    record_status.drop(op.get_bind(), checkfirst=True)
