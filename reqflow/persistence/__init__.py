from reqflow.persistence.repository import Repository
from reqflow.persistence.sqlalchemy_repository import SQLAlchemyRepository

__all__ = ["Repository", "SQLAlchemyRepository"]
