"""add topic_books storage fields

Revision ID: 0003
Revises: 0002
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0003"
down_revision = "0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Existing rows keep NULL storage_type; the migration sweep picks them up.
    op.add_column("topic_books", sa.Column("storage_type", sa.String(length=32), nullable=True))
    op.add_column("topic_books", sa.Column("github_asset_id", sa.BigInteger(), nullable=True))
    op.add_column("topic_books", sa.Column("github_release_tag", sa.String(length=200), nullable=True))
    op.add_column("topic_books", sa.Column("storage_object_key", sa.String(length=1000), nullable=True))
    op.create_index("ix_topic_books_storage_type", "topic_books", ["storage_type"], unique=False)
    op.create_check_constraint(
        "ck_topic_books_release_has_asset",
        "topic_books",
        "storage_type IS DISTINCT FROM 'github_release' OR (github_asset_id IS NOT NULL AND github_release_tag IS NOT NULL)",
    )


def downgrade() -> None:
    op.drop_constraint("ck_topic_books_release_has_asset", "topic_books", type_="check")
    op.drop_index("ix_topic_books_storage_type", table_name="topic_books")
    op.drop_column("topic_books", "storage_object_key")
    op.drop_column("topic_books", "github_release_tag")
    op.drop_column("topic_books", "github_asset_id")
    op.drop_column("topic_books", "storage_type")
