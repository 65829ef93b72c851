from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_create_books"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "books",
        sa.Column("id", sa.Integer(), sa.Identity(always=False), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("sales", sa.Integer(), nullable=False),
        sa.Column("pages", sa.Integer(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("runtime", sa.Integer(), nullable=False),
        sa.Column("genres", postgresql.ARRAY(sa.Text()), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    )
    op.execute("CREATE INDEX IF NOT EXISTS books_title_idx ON books USING GIN (to_tsvector('simple', title))")
    op.execute("CREATE INDEX IF NOT EXISTS books_genres_idx ON books USING GIN (genres)")


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS books_genres_idx")
    op.execute("DROP INDEX IF EXISTS books_title_idx")
    op.drop_table("books")
