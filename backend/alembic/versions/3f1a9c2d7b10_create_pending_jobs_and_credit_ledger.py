"""create_pending_jobs_and_credit_ledger

Revision ID: 3f1a9c2d7b10
Revises:
Create Date: 2026-10-17 09:12:41.208315

"""

from typing import Sequence, Union

import sqlalchemy as sa
import sqlmodel

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f1a9c2d7b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

job_status = sa.Enum("PENDING", "PROCESSING", "COMPLETED", "FAILED", name="jobstatus")
job_type = sa.Enum("IMAGE", "VIDEO", name="jobtype")
provider = sa.Enum("RUNWARE", "WAVESPEED", "FALAI", name="provider")
transaction_type = sa.Enum("PURCHASE", "DEDUCTION", "REFUND", name="transactiontype")


def upgrade() -> None:
    """Create pending_jobs, user_credits and credit_transactions."""
    op.create_table(
        "pending_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=False),
        sa.Column("task_id", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=False),
        sa.Column("provider", provider, nullable=False),
        sa.Column("job_type", job_type, nullable=False),
        sa.Column("status", job_status, nullable=False),
        sa.Column("result_url", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("error_message", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("device_token", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=True),
        sa.Column("notification_sent", sa.Boolean(), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pending_jobs_task_id", "pending_jobs", ["task_id"], unique=True)
    op.create_index("ix_pending_jobs_user_id", "pending_jobs", ["user_id"], unique=False)
    op.create_index("ix_pending_jobs_status", "pending_jobs", ["status"], unique=False)
    op.create_index("ix_pending_jobs_created_at", "pending_jobs", ["created_at"], unique=False)
    op.create_index(
        "ix_pending_jobs_user_id_status", "pending_jobs", ["user_id", "status"], unique=False
    )

    op.create_table(
        "user_credits",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=False),
        sa.Column("balance", sa.Numeric(precision=12, scale=4), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_user_credits_user_id", "user_credits", ["user_id"], unique=True)

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=False),
        sa.Column("amount", sa.Numeric(precision=12, scale=4), nullable=False),
        sa.Column("transaction_type", transaction_type, nullable=False),
        sa.Column("description", sqlmodel.sql.sqltypes.AutoString(length=500), nullable=False),
        sa.Column("related_job_id", sa.Uuid(), nullable=True),
        sa.Column("payment_method", sqlmodel.sql.sqltypes.AutoString(length=50), nullable=True),
        sa.Column(
            "payment_transaction_id", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=True
        ),
        sa.Column("balance_after", sa.Numeric(precision=12, scale=4), nullable=False),
        sa.Column("idempotency_key", sqlmodel.sql.sqltypes.AutoString(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index(
        "ix_credit_transactions_user_id", "credit_transactions", ["user_id"], unique=False
    )
    op.create_index(
        "ix_credit_transactions_related_job_id",
        "credit_transactions",
        ["related_job_id"],
        unique=False,
    )
    op.create_index(
        "ix_credit_transactions_created_at", "credit_transactions", ["created_at"], unique=False
    )


def downgrade() -> None:
    """Drop the ledger and job tables and their enum types."""
    op.drop_index("ix_credit_transactions_created_at", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_related_job_id", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_user_id", table_name="credit_transactions")
    op.drop_table("credit_transactions")

    op.drop_index("ix_user_credits_user_id", table_name="user_credits")
    op.drop_table("user_credits")

    op.drop_index("ix_pending_jobs_user_id_status", table_name="pending_jobs")
    op.drop_index("ix_pending_jobs_created_at", table_name="pending_jobs")
    op.drop_index("ix_pending_jobs_status", table_name="pending_jobs")
    op.drop_index("ix_pending_jobs_user_id", table_name="pending_jobs")
    op.drop_index("ix_pending_jobs_task_id", table_name="pending_jobs")
    op.drop_table("pending_jobs")

    bind = op.get_bind()
    for enum_type in (transaction_type, provider, job_type, job_status):
        enum_type.drop(bind, checkfirst=True)
