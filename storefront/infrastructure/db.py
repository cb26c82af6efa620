from dataclasses import dataclass
from typing import Callable, Iterator, TypeVar
import time

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from storefront.core_settings import get_settings
from storefront.core.logging_config import get_logger
from storefront.domain.models import Base

logger = get_logger(__name__)

T = TypeVar("T")


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # Single shared connection so in-memory databases survive across sessions
        return create_engine(
            url,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, echo=False, future=True, pool_pre_ping=True)


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


settings = get_settings()
engine = build_engine(settings.database_url)
SessionLocal = build_session_factory(engine)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_models(bind: Engine = None):
    Base.metadata.create_all(bind or engine)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for transient connection failures around one transaction."""
    max_attempts: int = 3
    backoff_seconds: float = 0.2

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        cfg = get_settings()
        return cls(max_attempts=max(1, cfg.DB_RETRY_ATTEMPTS), backoff_seconds=cfg.DB_RETRY_BACKOFF_SECONDS)


def run_in_transaction(
    session_factory: Callable[[], Session],
    work: Callable[[Session], T],
    policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``work`` inside a single transaction, committing only if it returns.

    A failed attempt is rolled back in full, so only connection-level
    ``OperationalError`` is retried. Everything else propagates on the first
    failure.
    """
    attempt = 0
    while True:
        attempt += 1
        session = session_factory()
        try:
            with session.begin():
                result = work(session)
            return result
        except OperationalError as e:
            if attempt >= policy.max_attempts:
                logger.error(f"Transaction failed after {attempt} attempt(s): {e}")
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"Transient database error (attempt {attempt}/{policy.max_attempts}), retrying in {delay:.2f}s",
                extra={'extra_fields': {'attempt': attempt, 'error': str(e)}},
            )
            sleep(delay)
        finally:
            session.close()
