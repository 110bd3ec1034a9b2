import hashlib
import logging
import secrets

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from packbattle.load_secrets import pepper_data
from packbattle.models.basic_authentication_models import CredentialModel
from packbattle.models.basic_authentication_shemas import CredentialTable


def hash_password(password: str, salt: str) -> str:
    return hashlib.sha256((password + salt + pepper_data).encode()).hexdigest()


class CreateAuthentication:
    @staticmethod
    async def add_user_data(username: str, password: str, session: AsyncSession) -> CredentialModel:
        """Create credentials to authenticate the user. Does not commit.

        Args:
            username (str): Login name, also the domain user's username
            password (str): Plain password, stored salted and peppered
        """
        salt = secrets.token_hex(8)
        new_user = CredentialTable(
            username=username,
            hash_password=hash_password(password, salt),
            salt=salt,
        )
        session.add(new_user)
        await session.flush()
        logging.info(f"Stored credentials for {username}")
        return CredentialModel(username=username, hash_password=new_user.hash_password, salt=salt)


class ReadAuthentication:
    @staticmethod
    async def read_user_data(username: str, session: AsyncSession) -> CredentialModel | None:
        """Read user data to get salt and password hash

        Args:
            username (str): username of the user

        Returns:
            CredentialModel: username, password hash and salt
        """
        stmt = select(CredentialTable).where(CredentialTable.username == username)
        result = await session.execute(stmt)
        result = result.scalars().first()
        if result is None:
            return None
        return CredentialModel(
            username=result.username,
            hash_password=result.hash_password,
            salt=result.salt,
        )
