from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

# Base para modelos (lo importa pos_engine.main)
Base = declarative_base()


def make_engine(url: str):
    is_sqlite = url.startswith("sqlite")
    # Engine con timeout alto (contención ligera)
    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": 60} if is_sqlite else {},
        pool_pre_ping=True,
    )
    if is_sqlite:
        # PRAGMAs por conexión
        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_conn, _):
            cur = dbapi_conn.cursor()
            try:
                cur.execute("PRAGMA journal_mode=WAL;")
                cur.execute("PRAGMA busy_timeout=60000;")
                cur.execute("PRAGMA foreign_keys=ON;")
                cur.execute("PRAGMA synchronous=NORMAL;")
            finally:
                cur.close()

    return engine


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
