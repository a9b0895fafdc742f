from sqlalchemy import Boolean, Column, Integer, String, func
from sqlalchemy.sql.expression import false
from sqlalchemy.sql.sqltypes import TIMESTAMP

from .database import Base


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, nullable=False)
    username = Column(String, nullable=False, index=True)
    email = Column(String, nullable=False, server_default="", index=True)
    password = Column(String, nullable=False)
    real_name = Column(String, nullable=False, server_default="")
    # Not unique: two concurrent first logins may each insert a row.
    oauth_identifier = Column(String, nullable=False, server_default="", index=True)
    admin = Column(Boolean, nullable=False, server_default=false(), default=False)
    disable = Column(Boolean, nullable=False, server_default=false(), default=False)
    deleted = Column(Boolean, nullable=False, server_default=false(), default=False)
    starttime = Column(TIMESTAMP(timezone=True), nullable=True)
    endtime = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at = Column(
        TIMESTAMP(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at = Column(
        TIMESTAMP(timezone=True), nullable=False, server_default=func.now()
    )
