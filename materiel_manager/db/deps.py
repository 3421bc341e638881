from collections.abc import Generator

from .session import SessionLocalMateriel


def get_materiel_db() -> Generator:
    db = SessionLocalMateriel()
    try:
        yield db
    finally:
        db.close()
