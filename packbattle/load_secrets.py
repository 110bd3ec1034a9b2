import os
import pathlib
from dotenv import load_dotenv

load_dotenv()

user = os.getenv("DB_USER")
password = os.getenv("DB_PASSWORD")
host = os.getenv("DB_HOST")
port = os.getenv("DB_PORT", "5432")
db_name = os.getenv("DB_NAME")
pepper_data = os.getenv("PEPPER_DATA", "")

redis_url = os.getenv("REDIS_URL")

db_retry_attempts = int(os.getenv("DB_RETRY_ATTEMPTS", "3"))
db_retry_delay = float(os.getenv("DB_RETRY_DELAY", "0.5"))

auto_start_after_minutes = int(os.getenv("AUTO_START_AFTER_MINUTES", "30"))
auto_start_interval_seconds = int(os.getenv("AUTO_START_INTERVAL_SECONDS", "60"))

log_level = os.getenv("LOG_LEVEL", "INFO").upper()


def database_url() -> str:
    """Return the datastore URL, preferring an explicit DATABASE_URL."""
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    if host:
        return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{db_name}"
    file_path = pathlib.Path(__file__).parents[1] / "packbattle.sqlite3"
    return f"sqlite+aiosqlite:///{file_path}"


if __name__ == "__main__":
    print(database_url(), redis_url, pepper_data)
