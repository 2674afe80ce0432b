from contextlib import contextmanager
from pathlib import Path
import psycopg
from psycopg.rows import dict_row
from .settings import DATABASE_URL

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


@contextmanager
def get_conn():
    conn = psycopg.connect(DATABASE_URL, row_factory=dict_row)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_schema():
    """Create the checkout tables if they do not exist yet."""
    with get_conn() as conn:
        conn.execute(SCHEMA_PATH.read_text())
