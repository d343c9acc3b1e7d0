from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from consultbook.core import config


def build_engine(url: str, echo: bool = False):
    connect_args = {}
    if url.startswith('sqlite'):
        # FastAPI serves sync handlers from a threadpool.
        connect_args['check_same_thread'] = False
    return create_engine(url, echo=echo, connect_args=connect_args)


engine = build_engine(config.DATABASE_URL, echo=config.DATABASE_ECHO)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_appointment_schema_checked = False


def ensure_appointment_schema() -> None:
    """Bring an existing appointments table up to the current column set.

    Tables created by ``create_all`` already match the models; this only
    patches databases created by earlier releases.
    """
    global _appointment_schema_checked

    if _appointment_schema_checked:
        return

    with _schema_lock:
        if _appointment_schema_checked:
            return

        inspector = inspect(engine)

        if 'appointments' not in inspector.get_table_names():
            _appointment_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('appointments')}
        migration_steps = [
            ('version', 'ALTER TABLE appointments ADD COLUMN version INTEGER NOT NULL DEFAULT 1'),
            ('participant_status', 'ALTER TABLE appointments ADD COLUMN participant_status JSON'),
            ('documents', 'ALTER TABLE appointments ADD COLUMN documents JSON'),
            ('chat_log', 'ALTER TABLE appointments ADD COLUMN chat_log JSON'),
            (
                'advisor_confirmation_expires',
                'ALTER TABLE appointments ADD COLUMN advisor_confirmation_expires TIMESTAMP',
            ),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_client_start ON appointments(client_id, date_time)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_advisor_start ON appointments(advisor_id, date_time)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_status ON appointments(status)')
            )
            connection.execute(
                text(
                    'CREATE INDEX IF NOT EXISTS idx_appointments_confirmation_deadline '
                    'ON appointments(advisor_confirmation_expires)'
                )
            )

        _appointment_schema_checked = True
