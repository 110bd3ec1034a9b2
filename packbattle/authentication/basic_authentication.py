import argparse
import asyncio
import logging
import secrets
from decimal import Decimal

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from packbattle.authentication.basic_authentication_crud import (
    CreateAuthentication,
    ReadAuthentication,
    hash_password,
)
from packbattle.crud import CreateData
from packbattle.db import Database, get_database, with_retry
from packbattle.load_secrets import database_url
from packbattle.models.basic_authentication_models import CredentialModel
from packbattle.models.dc_models import UserRole

security = HTTPBasic()
create_auth = CreateAuthentication()
read_auth = ReadAuthentication()


class BasicAuthentication:
    def __init__(self):
        pass

    async def check_user_data(
        self,
        request: Request,
        credentials: HTTPBasicCredentials = Depends(security),
    ) -> CredentialModel:
        """Check the HTTP Basic credentials of the caller.

        Missing credentials are rejected by HTTPBasic itself.

        Raises:
            HTTPException: The username is unknown or the password is incorrect

        Returns:
            CredentialModel: The authenticated credentials
        """
        database: Database = get_database(request)

        async def _read():
            async with database.session() as session:
                return await read_auth.read_user_data(credentials.username, session)

        user_data = await with_retry(_read, "auth:read_user")
        if user_data is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid username or password",
                headers={"WWW-Authenticate": "Basic"},
            )

        hashed_password = hash_password(credentials.password, user_data.salt)
        if not secrets.compare_digest(hashed_password, user_data.hash_password):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid username or password",
                headers={"WWW-Authenticate": "Basic"},
            )
        return user_data

    async def register_user(
        self,
        database: Database,
        username: str,
        password: str,
        *,
        email: str | None = None,
        role: UserRole = UserRole.USER,
        is_bot: bool = False,
        coins: Decimal = Decimal("0"),
    ) -> None:
        """Store credentials and the matching user row in one transaction."""
        async with database.session() as session:
            async with session.begin():
                await create_auth.add_user_data(username, password, session)
                await CreateData.add_user(
                    username, session, email=email, role=role, is_bot=is_bot, coins=coins
                )


def get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Register a packbattle user")
    parser.add_argument("--username", type=str, help="Username", required=True)
    parser.add_argument("--password", type=str, help="Password", required=True)
    parser.add_argument("--email", type=str, help="Email", default=None)
    parser.add_argument("--admin", action="store_true", help="Grant the ADMIN role")
    parser.add_argument("--bot", action="store_true", help="Mark the user as a bot")
    parser.add_argument("--coins", type=Decimal, help="Starting balance", default=Decimal("0"))
    return parser


async def main(args: argparse.Namespace):
    database = Database(database_url()).open()
    try:
        await database.create_tables()
        await BasicAuthentication().register_user(
            database,
            args.username,
            args.password,
            email=args.email,
            role=UserRole.ADMIN if args.admin else UserRole.USER,
            is_bot=args.bot,
            coins=args.coins,
        )
    finally:
        await database.close()
    logging.info(f"Registered {args.username}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    parser = get_parser()
    asyncio.run(main(parser.parse_args()))
