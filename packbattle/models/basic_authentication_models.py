from pydantic import BaseModel


class CredentialModel(BaseModel):
    """Stored login of a player. The username is shared with the ``users`` row."""
    username: str
    hash_password: str
    salt: str
