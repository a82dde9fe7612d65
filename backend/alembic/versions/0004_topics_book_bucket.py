"""add topics.is_book_bucket with one bucket per theme

Revision ID: 0004
Revises: 0003
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0004"
down_revision = "0003"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "topics",
        sa.Column("is_book_bucket", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    )
    # Bucket topics created before the flag existed are recognised by title.
    op.execute(
        """
        UPDATE topics t SET is_book_bucket = true
        FROM (
            SELECT DISTINCT ON (tp.theme_id) tp.id
            FROM topics tp JOIN themes th ON th.id = tp.theme_id
            WHERE tp.title = th.name || ' PDFs'
            ORDER BY tp.theme_id, tp.created_at
        ) first_bucket
        WHERE t.id = first_bucket.id
        """
    )
    op.create_index(
        "uq_topics_theme_book_bucket",
        "topics",
        ["theme_id"],
        unique=True,
        postgresql_where=sa.text("is_book_bucket"),
    )


def downgrade() -> None:
    op.drop_index("uq_topics_theme_book_bucket", table_name="topics")
    op.drop_column("topics", "is_book_bucket")
