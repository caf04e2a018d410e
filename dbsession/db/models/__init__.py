"""Database models"""

from dbsession.db.models.session_table import session_table

__all__ = ["session_table"]
