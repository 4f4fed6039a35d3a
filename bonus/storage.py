"""
Storage backends for the bonus ledger.

Both backends expose the same method set (see ``Storage``) and are injected
into ``BonusService``. Every multi-row write happens inside ``atomic()``;
nested ``atomic()`` blocks join the outermost unit, so a failure anywhere
rolls back every write made since the outer block was entered.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, Protocol
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .db import BonusSettingsRow, BonusTransactionRow, User, init_db
from .errors import IdempotencyConflictError, UserAlreadyExistsError, UserNotFoundError

logger = logging.getLogger(__name__)


class Storage(Protocol):
    def atomic(self): ...
    def create_schema(self) -> None: ...
    def get_settings(self) -> Optional[dict]: ...
    def save_settings(self, data: dict) -> None: ...
    def insert_transaction(self, data: dict) -> None: ...
    def update_transaction_status(self, transaction_id: UUID, status: str, updated_at, from_status: str) -> bool: ...
    def get_transaction(self, transaction_id: UUID, for_update: bool = False) -> Optional[dict]: ...
    def list_transactions(self, user_id: Optional[str] = None, appointment_id: Optional[str] = None) -> list[dict]: ...
    def add_user(self, data: dict) -> None: ...
    def get_user(self, user_id: str) -> Optional[dict]: ...
    def find_user_by_referral_code(self, code: str) -> Optional[dict]: ...
    def list_referred_users(self, user_id: str) -> list[dict]: ...
    def set_referrer(self, user_id: str, referrer_id: str) -> None: ...
    def get_balance(self, user_id: str, for_update: bool = False) -> Optional[int]: ...
    def adjust_balance(self, user_id: str, delta: int) -> None: ...
    def set_balance(self, user_id: str, value: int) -> None: ...
    def list_balances(self) -> dict[str, int]: ...
    def completed_totals(self) -> dict[str, int]: ...


class InMemoryStorage:
    def __init__(self):
        self.users: dict[str, dict] = {}
        self.transactions: dict[UUID, dict] = {}
        self.settings: dict[str, dict] = {}
        self.idempotency_index: dict[str, UUID] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._undo: list[Callable[[], None]] = []

    def create_schema(self) -> None:
        pass

    @contextmanager
    def atomic(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            self._depth = 1
            self._undo = []
            try:
                yield self
            except BaseException:
                self._rollback()
                logger.warning("In-memory unit rolled back")
                raise
            finally:
                self._depth = 0
                self._undo = []

    def _record(self, undo: Callable[[], None]) -> None:
        if self._depth:
            self._undo.append(undo)

    def _rollback(self) -> None:
        for undo in reversed(self._undo):
            undo()

    # Settings

    def get_settings(self) -> Optional[dict]:
        with self._lock:
            settings = self.settings.get("default")
            return dict(settings) if settings else None

    def save_settings(self, data: dict) -> None:
        with self._lock:
            previous = self.settings.get(data["id"])
            self.settings[data["id"]] = dict(data)
            if previous is None:
                self._record(lambda: self.settings.pop(data["id"], None))
            else:
                self._record(lambda: self.settings.__setitem__(data["id"], previous))

    # Transactions

    def insert_transaction(self, data: dict) -> None:
        with self._lock:
            key = data.get("idempotency_key")
            if key and key in self.idempotency_index:
                raise IdempotencyConflictError(f"Transaction with key {key} already exists")
            self.transactions[data["id"]] = dict(data)
            if key:
                self.idempotency_index[key] = data["id"]

            def undo():
                self.transactions.pop(data["id"], None)
                if key:
                    self.idempotency_index.pop(key, None)
            self._record(undo)

    def update_transaction_status(self, transaction_id: UUID, status: str, updated_at, from_status: str) -> bool:
        with self._lock:
            row = self.transactions.get(transaction_id)
            if row is None or row["status"] != from_status:
                return False
            previous = (row["status"], row["updated_at"])
            row["status"] = status
            row["updated_at"] = updated_at
            self._record(lambda: row.update(status=previous[0], updated_at=previous[1]))
            return True

    def get_transaction(self, transaction_id: UUID, for_update: bool = False) -> Optional[dict]:
        with self._lock:
            row = self.transactions.get(transaction_id)
            return dict(row) if row else None

    def list_transactions(self, user_id: Optional[str] = None, appointment_id: Optional[str] = None) -> list[dict]:
        with self._lock:
            rows = [
                dict(t) for t in reversed(list(self.transactions.values()))
                if (user_id is None or t["user_id"] == user_id)
                and (appointment_id is None or t["appointment_id"] == appointment_id)
            ]
        # Stable sort: rows sharing a timestamp keep newest-inserted first
        rows.sort(key=lambda t: t["created_at"], reverse=True)
        return rows

    # Users

    def add_user(self, data: dict) -> None:
        with self._lock:
            if data["id"] in self.users:
                raise UserAlreadyExistsError(f"User {data['id']} already exists")
            for user in self.users.values():
                if user["email"] == data["email"]:
                    raise UserAlreadyExistsError(f"Email {data['email']} is already registered")
                if data.get("referral_code") and user.get("referral_code") == data["referral_code"]:
                    raise UserAlreadyExistsError(f"Referral code {data['referral_code']} is taken")
            self.users[data["id"]] = dict(data)
            self._record(lambda: self.users.pop(data["id"], None))

    def get_user(self, user_id: str) -> Optional[dict]:
        with self._lock:
            user = self.users.get(user_id)
            return dict(user) if user else None

    def find_user_by_referral_code(self, code: str) -> Optional[dict]:
        with self._lock:
            for user in self.users.values():
                if user.get("referral_code") == code:
                    return dict(user)
            return None

    def list_referred_users(self, user_id: str) -> list[dict]:
        with self._lock:
            users = [dict(u) for u in reversed(list(self.users.values())) if u.get("referred_by_id") == user_id]
        users.sort(key=lambda u: u["created_at"], reverse=True)
        return users

    def set_referrer(self, user_id: str, referrer_id: str) -> None:
        with self._lock:
            user = self._require_user(user_id)
            previous = user.get("referred_by_id")
            user["referred_by_id"] = referrer_id
            self._record(lambda: user.__setitem__("referred_by_id", previous))

    # Balance projection

    def get_balance(self, user_id: str, for_update: bool = False) -> Optional[int]:
        with self._lock:
            user = self.users.get(user_id)
            return user["bonus_balance"] if user else None

    def adjust_balance(self, user_id: str, delta: int) -> None:
        with self._lock:
            user = self._require_user(user_id)
            user["bonus_balance"] += delta
            self._record(lambda: user.__setitem__("bonus_balance", user["bonus_balance"] - delta))

    def set_balance(self, user_id: str, value: int) -> None:
        with self._lock:
            user = self._require_user(user_id)
            previous = user["bonus_balance"]
            user["bonus_balance"] = value
            self._record(lambda: user.__setitem__("bonus_balance", previous))

    def list_balances(self) -> dict[str, int]:
        with self._lock:
            return {user_id: user["bonus_balance"] for user_id, user in self.users.items()}

    def completed_totals(self) -> dict[str, int]:
        totals: dict[str, int] = {}
        with self._lock:
            for t in self.transactions.values():
                if t["status"] == "completed":
                    totals[t["user_id"]] = totals.get(t["user_id"], 0) + t["amount"]
        return totals

    def _require_user(self, user_id: str) -> dict:
        user = self.users.get(user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return user


def _columns(row, model) -> dict:
    return {column.name: getattr(row, column.name) for column in model.__table__.columns}


class SqlAlchemyStorage:
    """Relational store; one session per thread, joined by nested atomic() blocks."""

    def __init__(self, engine):
        self.engine = engine
        self.session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        self._local = threading.local()

    def create_schema(self) -> None:
        init_db(self.engine)

    @contextmanager
    def atomic(self) -> Iterator["SqlAlchemyStorage"]:
        if getattr(self._local, "session", None) is not None:
            yield self
            return

        session = self.session_factory()
        self._local.session = session
        try:
            with session.begin():
                yield self
        except Exception:
            logger.warning("Database unit rolled back")
            raise
        finally:
            self._local.session = None
            session.close()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = getattr(self._local, "session", None)
        if session is not None:
            yield session
            return
        session = self.session_factory()
        try:
            yield session
        finally:
            session.close()

    # Settings

    def get_settings(self) -> Optional[dict]:
        with self._session() as session:
            row = session.get(BonusSettingsRow, "default")
            return _columns(row, BonusSettingsRow) if row else None

    def save_settings(self, data: dict) -> None:
        with self._session() as session:
            session.merge(BonusSettingsRow(**data))
            session.flush()

    # Transactions

    def insert_transaction(self, data: dict) -> None:
        with self._session() as session:
            session.add(BonusTransactionRow(**{**data, "id": str(data["id"])}))
            try:
                session.flush()
            except IntegrityError as e:
                # idempotency_key is the only unique column besides the random id
                raise IdempotencyConflictError(
                    f"Transaction with key {data.get('idempotency_key')} already exists"
                ) from e

    def update_transaction_status(self, transaction_id: UUID, status: str, updated_at, from_status: str) -> bool:
        with self._session() as session:
            updated = session.query(BonusTransactionRow).filter(
                BonusTransactionRow.id == str(transaction_id),
                BonusTransactionRow.status == from_status,
            ).update(
                {BonusTransactionRow.status: status, BonusTransactionRow.updated_at: updated_at},
                synchronize_session=False,
            )
            return bool(updated)

    def get_transaction(self, transaction_id: UUID, for_update: bool = False) -> Optional[dict]:
        with self._session() as session:
            query = session.query(BonusTransactionRow).filter(BonusTransactionRow.id == str(transaction_id))
            if for_update:
                query = query.with_for_update().populate_existing()
            row = query.first()
            return _columns(row, BonusTransactionRow) if row else None

    def list_transactions(self, user_id: Optional[str] = None, appointment_id: Optional[str] = None) -> list[dict]:
        with self._session() as session:
            query = session.query(BonusTransactionRow)
            if user_id is not None:
                query = query.filter(BonusTransactionRow.user_id == user_id)
            if appointment_id is not None:
                query = query.filter(BonusTransactionRow.appointment_id == appointment_id)
            rows = query.order_by(BonusTransactionRow.created_at.desc()).all()
            return [_columns(row, BonusTransactionRow) for row in rows]

    # Users

    def add_user(self, data: dict) -> None:
        with self._session() as session:
            if session.get(User, data["id"]) is not None:
                raise UserAlreadyExistsError(f"User {data['id']} already exists")
            session.add(User(**data))
            try:
                session.flush()
            except IntegrityError as e:
                # id, email and referral_code are unique
                raise UserAlreadyExistsError(
                    f"User {data['id']} or email {data['email']} is already registered"
                ) from e

    def get_user(self, user_id: str) -> Optional[dict]:
        with self._session() as session:
            user = session.get(User, user_id)
            return _columns(user, User) if user else None

    def find_user_by_referral_code(self, code: str) -> Optional[dict]:
        with self._session() as session:
            user = session.query(User).filter(User.referral_code == code).first()
            return _columns(user, User) if user else None

    def list_referred_users(self, user_id: str) -> list[dict]:
        with self._session() as session:
            users = (
                session.query(User)
                .filter(User.referred_by_id == user_id)
                .order_by(User.created_at.desc())
                .all()
            )
            return [_columns(user, User) for user in users]

    def set_referrer(self, user_id: str, referrer_id: str) -> None:
        with self._session() as session:
            updated = session.query(User).filter(User.id == user_id).update(
                {User.referred_by_id: referrer_id},
                synchronize_session=False,
            )
            if not updated:
                raise UserNotFoundError(f"User {user_id} not found")

    # Balance projection

    def get_balance(self, user_id: str, for_update: bool = False) -> Optional[int]:
        with self._session() as session:
            query = session.query(User.bonus_balance).filter(User.id == user_id)
            if for_update:
                query = query.with_for_update()
            row = query.first()
            return row[0] if row else None

    def adjust_balance(self, user_id: str, delta: int) -> None:
        with self._session() as session:
            updated = session.query(User).filter(User.id == user_id).update(
                {User.bonus_balance: User.bonus_balance + delta},
                synchronize_session=False,
            )
            if not updated:
                raise UserNotFoundError(f"User {user_id} not found")

    def set_balance(self, user_id: str, value: int) -> None:
        with self._session() as session:
            updated = session.query(User).filter(User.id == user_id).update(
                {User.bonus_balance: value},
                synchronize_session=False,
            )
            if not updated:
                raise UserNotFoundError(f"User {user_id} not found")

    def list_balances(self) -> dict[str, int]:
        with self._session() as session:
            return {user_id: balance for user_id, balance in session.query(User.id, User.bonus_balance).all()}

    def completed_totals(self) -> dict[str, int]:
        with self._session() as session:
            rows = (
                session.query(BonusTransactionRow.user_id, func.sum(BonusTransactionRow.amount))
                .filter(BonusTransactionRow.status == "completed")
                .group_by(BonusTransactionRow.user_id)
                .all()
            )
            return {user_id: int(total or 0) for user_id, total in rows}
