"""sanitize comments stored before sanitisation on write

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-18 09:05:00

Applies the same cleaning the API now does on write to every existing
comment.  Rows already clean are left untouched.  Not reversible: the
original markup is gone.
"""
from alembic import op
import sqlalchemy as sa

from app.services.comment_service import sanitize_comment

revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None

comments = sa.table(
    "comments",
    sa.column("id", sa.Integer),
    sa.column("content", sa.Text),
)


def upgrade() -> None:
    bind = op.get_bind()
    rows = bind.execute(sa.select(comments.c.id, comments.c.content)).all()
    for comment_id, content in rows:
        cleaned = sanitize_comment(content or "")
        if cleaned != content:
            bind.execute(
                comments.update().where(comments.c.id == comment_id).values(content=cleaned)
            )


def downgrade() -> None:
    pass
