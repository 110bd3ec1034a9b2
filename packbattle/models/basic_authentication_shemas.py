from sqlalchemy.schema import Column
from sqlalchemy.types import String

from packbattle.models.schemas import Base


class CredentialTable(Base):
    __tablename__ = "credentials"
    username = Column(String, primary_key=True, index=True)
    hash_password = Column(String)
    salt = Column(String)
