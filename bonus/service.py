import logging
import secrets
from datetime import datetime, timezone
from typing import Optional, Union
from uuid import UUID, uuid4

from . import config
from .errors import (
    LedgerServiceError,
    IdempotencyConflictError,
    TransactionNotFoundError,
    UserNotFoundError,
    UserAlreadyExistsError,
    InvalidStateTransitionError,
    InsufficientBalanceError,
    SettingsNotInitializedError,
    StaleTransactionError,
)
from .models import (
    CREATE_STATUSES,
    TransactionKind,
    TransactionStatus,
    BonusSettings,
    BonusTransaction,
    UpdateSettingsRequest,
    UserSummary,
    ReferredUser,
    ReferralResult,
    AppointmentResult,
    BalanceDiscrepancy,
    RegisteredUser,
    transition_delta,
)
from .storage import InMemoryStorage, Storage

logger = logging.getLogger(__name__)

__all__ = [
    "BonusService",
    "LedgerServiceError",
    "IdempotencyConflictError",
    "TransactionNotFoundError",
    "UserNotFoundError",
    "UserAlreadyExistsError",
    "InvalidStateTransitionError",
    "InsufficientBalanceError",
    "SettingsNotInitializedError",
    "StaleTransactionError",
]

BOOKING_DESCRIPTION = "Bonus for booking a service"
REFERRER_DESCRIPTION = "Bonus for inviting a new user"
REFERRED_DESCRIPTION = "Bonus for signing up by invitation"
SPENT_DESCRIPTION = "Bonus points redeemed for a service"
MANUAL_DESCRIPTION = "Manual balance adjustment by administrator"


def generate_referral_code() -> str:
    return secrets.token_hex(4).upper()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class BonusService:
    """
    Transaction engine for the bonus point ledger.

    The only writer of the transaction log and of users' cached
    ``bonus_balance``. Each write runs inside one ``storage.atomic()`` unit.
    """

    def __init__(self, storage: Optional[Storage] = None, allow_overdraft: Optional[bool] = None):
        self.storage = storage or InMemoryStorage()
        self.allow_overdraft = config.BONUS_ALLOW_OVERDRAFT if allow_overdraft is None else allow_overdraft

    # Settings

    def initialize(self) -> BonusSettings:
        """Create the schema and the default settings row; safe to call repeatedly."""
        self.storage.create_schema()
        with self.storage.atomic():
            existing = self.storage.get_settings()
            if existing:
                return BonusSettings(**existing)

            settings = BonusSettings(
                booking_reward_amount=config.DEFAULT_BOOKING_REWARD,
                referrer_reward_amount=config.DEFAULT_REFERRER_REWARD,
                referral_reward_amount=config.DEFAULT_REFERRAL_REWARD,
                updated_at=_now(),
            )
            self.storage.save_settings(settings.model_dump())
        logger.info(
            "Bonus settings initialized: booking=%s referrer=%s referral=%s",
            settings.booking_reward_amount, settings.referrer_reward_amount, settings.referral_reward_amount,
        )
        return settings

    def get_settings(self) -> BonusSettings:
        data = self.storage.get_settings()
        if not data:
            raise SettingsNotInitializedError("Bonus settings missing; call initialize() at startup")
        return BonusSettings(**data)

    def update_settings(self, request: Union[UpdateSettingsRequest, dict]) -> BonusSettings:
        if isinstance(request, dict):
            request = UpdateSettingsRequest(**request)
        changes = request.model_dump(exclude_none=True)

        with self.storage.atomic():
            current = self.get_settings()
            updated = current.model_copy(update={**changes, "updated_at": _now()})
            self.storage.save_settings(updated.model_dump())
        logger.info("Bonus settings updated: %s", changes)
        return updated

    # Transaction engine

    def create_transaction(
        self,
        user_id: str,
        amount: int,
        kind: TransactionKind,
        status: TransactionStatus,
        description: Optional[str] = None,
        appointment_id: Optional[str] = None,
        referred_user_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> BonusTransaction:
        kind = TransactionKind(kind)
        status = TransactionStatus(status)
        if status not in CREATE_STATUSES:
            raise InvalidStateTransitionError(f"Cannot create a transaction in {status.value} state")

        now = _now()
        transaction = BonusTransaction(
            id=uuid4(),
            user_id=user_id,
            amount=amount,
            kind=kind,
            status=status,
            description=description,
            appointment_id=appointment_id,
            referred_user_id=referred_user_id,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )

        with self.storage.atomic():
            if self.storage.get_user(user_id) is None:
                raise UserNotFoundError(f"User {user_id} not found")
            self.storage.insert_transaction(transaction.model_dump() | {
                "kind": kind.value,
                "status": status.value,
            })
            delta = CREATE_STATUSES[status] * amount
            if delta:
                self.storage.adjust_balance(user_id, delta)

        logger.info(
            "Created %s transaction %s for user %s: amount=%s status=%s",
            kind.value, transaction.id, user_id, amount, status.value,
        )
        return transaction

    def update_transaction_status(
        self, transaction_id: Union[UUID, str], new_status: TransactionStatus
    ) -> Optional[BonusTransaction]:
        new_status = TransactionStatus(new_status)

        with self.storage.atomic():
            transaction = self._find_transaction(transaction_id, for_update=True)
            if transaction is None:
                return None

            delta = transition_delta(transaction.status, new_status, transaction.amount)
            if delta is None:
                raise InvalidStateTransitionError(
                    f"Cannot move transaction {transaction.id} from {transaction.status.value} to {new_status.value}"
                )
            if transaction.status == new_status:
                return transaction

            now = _now()
            if not self.storage.update_transaction_status(
                transaction.id, new_status.value, now, from_status=transaction.status.value,
            ):
                raise StaleTransactionError(
                    f"Transaction {transaction.id} changed status concurrently, expected {transaction.status.value}"
                )
            if delta:
                self.storage.adjust_balance(transaction.user_id, delta)

        logger.info(
            "Transaction %s moved %s -> %s (balance delta %s for user %s)",
            transaction.id, transaction.status.value, new_status.value, delta, transaction.user_id,
        )
        return transaction.model_copy(update={"status": new_status, "updated_at": now})

    # Reward triggers

    def add_booking_bonus(self, user_id: str, appointment_id: str) -> BonusTransaction:
        # Provisional until the appointment is completed
        settings = self.get_settings()
        return self.create_transaction(
            user_id=user_id,
            amount=settings.booking_reward_amount,
            kind=TransactionKind.BOOKING,
            status=TransactionStatus.PENDING,
            description=BOOKING_DESCRIPTION,
            appointment_id=appointment_id,
            idempotency_key=f"booking:{appointment_id}",
        )

    def add_referral_bonus(self, referrer_id: str, referred_id: str) -> ReferralResult:
        if referrer_id == referred_id:
            raise LedgerServiceError(f"User {referrer_id} cannot refer themselves")
        settings = self.get_settings()

        with self.storage.atomic():
            referred_user = self.storage.get_user(referred_id)
            if referred_user is None:
                raise UserNotFoundError(f"User {referred_id} not found")
            if referred_user.get("referred_by_id") != referrer_id:
                self.storage.set_referrer(referred_id, referrer_id)

            referrer = self.create_transaction(
                user_id=referrer_id,
                amount=settings.referrer_reward_amount,
                kind=TransactionKind.REFERRAL,
                status=TransactionStatus.COMPLETED,
                description=REFERRER_DESCRIPTION,
                referred_user_id=referred_id,
                idempotency_key=f"referral:{referred_id}:referrer",
            )
            referred = self.create_transaction(
                user_id=referred_id,
                amount=settings.referral_reward_amount,
                kind=TransactionKind.REFERRAL,
                status=TransactionStatus.COMPLETED,
                description=REFERRED_DESCRIPTION,
                idempotency_key=f"referral:{referred_id}:referred",
            )

        logger.info("Referral bonus issued: %s invited %s", referrer_id, referred_id)
        return ReferralResult(referrer=referrer, referred=referred)

    def spend_bonus(self, user_id: str, amount: int, appointment_id: str) -> BonusTransaction:
        debit = -abs(amount)

        with self.storage.atomic():
            self._check_funds(user_id, debit)
            return self.create_transaction(
                user_id=user_id,
                amount=debit,
                kind=TransactionKind.SPENT,
                status=TransactionStatus.COMPLETED,
                description=SPENT_DESCRIPTION,
                appointment_id=appointment_id,
                idempotency_key=f"spent:{appointment_id}",
            )

    def manual_adjustment(self, user_id: str, amount: int, description: Optional[str] = None) -> BonusTransaction:
        with self.storage.atomic():
            if amount < 0:
                self._check_funds(user_id, amount)
            return self.create_transaction(
                user_id=user_id,
                amount=amount,
                kind=TransactionKind.MANUAL,
                status=TransactionStatus.COMPLETED,
                description=description or MANUAL_DESCRIPTION,
            )

    def settle_appointment(self, appointment_id: str) -> AppointmentResult:
        """Complete every pending transaction attached to a rendered appointment."""
        settled = []
        with self.storage.atomic():
            for transaction in self._appointment_transactions(appointment_id):
                if transaction.status == TransactionStatus.PENDING:
                    settled.append(self.update_transaction_status(transaction.id, TransactionStatus.COMPLETED))
        return AppointmentResult(appointment_id=appointment_id, transactions=settled)

    def cancel_appointment(self, appointment_id: str) -> AppointmentResult:
        """Drop pending booking rewards and refund redeemed points of a cancelled appointment."""
        changed = []
        with self.storage.atomic():
            for transaction in self._appointment_transactions(appointment_id):
                unsettled_booking = (
                    transaction.kind == TransactionKind.BOOKING and transaction.status == TransactionStatus.PENDING
                )
                # Cancelling a completed debit reverses it exactly once
                redeemed = transaction.kind == TransactionKind.SPENT and transaction.status == TransactionStatus.COMPLETED
                if unsettled_booking or redeemed:
                    changed.append(self.update_transaction_status(transaction.id, TransactionStatus.CANCELLED))
        logger.info("Appointment %s cancelled: %s bonus transactions changed", appointment_id, len(changed))
        return AppointmentResult(appointment_id=appointment_id, transactions=changed)

    def register_user(
        self,
        user_id: str,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        referral_code: Optional[str] = None,
    ) -> RegisteredUser:
        with self.storage.atomic():
            referrer = self.storage.find_user_by_referral_code(referral_code) if referral_code else None
            if referral_code and referrer is None:
                logger.warning("Referral code %s not found, registering %s without referrer", referral_code, user_id)

            code = generate_referral_code()
            while self.storage.find_user_by_referral_code(code):
                code = generate_referral_code()

            user = RegisteredUser(
                id=user_id,
                email=email,
                first_name=first_name,
                last_name=last_name,
                referral_code=code,
                referred_by_id=referrer["id"] if referrer else None,
                created_at=_now(),
            )
            self.storage.add_user(user.model_dump())

            if referrer:
                result = self.add_referral_bonus(referrer["id"], user_id)
                user.bonus_balance = result.referred.amount

        logger.info("Registered user %s (referred by %s)", user_id, user.referred_by_id)
        return user

    # Queries

    def get_user_balance(self, user_id: str) -> int:
        return self.storage.get_balance(user_id) or 0

    def get_user_transactions(self, user_id: str) -> list[BonusTransaction]:
        return [BonusTransaction(**t) for t in self.storage.list_transactions(user_id=user_id)]

    def get_all_transactions(self) -> list[BonusTransaction]:
        return [BonusTransaction(**t) for t in self.storage.list_transactions()]

    def get_transaction_by_id(self, transaction_id: Union[UUID, str]) -> Optional[BonusTransaction]:
        return self._find_transaction(transaction_id)

    def get_transaction(self, transaction_id: Union[UUID, str]) -> BonusTransaction:
        transaction = self.get_transaction_by_id(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    def get_referred_users(self, user_id: str) -> list[ReferredUser]:
        return [
            ReferredUser(user=UserSummary(**u), created_at=u["created_at"])
            for u in self.storage.list_referred_users(user_id)
        ]

    def get_referrer(self, user_id: str) -> Optional[UserSummary]:
        user = self.storage.get_user(user_id)
        if not user or not user.get("referred_by_id"):
            return None
        referrer = self.storage.get_user(user["referred_by_id"])
        return UserSummary(**referrer) if referrer else None

    def get_user(self, user_id: str) -> RegisteredUser:
        user = self.storage.get_user(user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return RegisteredUser(**user)

    def reconcile_balances(self, repair: bool = False) -> list[BalanceDiscrepancy]:
        """Compare cached balances with the completed transaction log."""
        discrepancies = []
        with self.storage.atomic():
            totals = self.storage.completed_totals()
            for user_id, cached in self.storage.list_balances().items():
                computed = totals.get(user_id, 0)
                if cached == computed:
                    continue
                logger.error(
                    "Balance mismatch for user %s: cached=%s computed=%s", user_id, cached, computed,
                )
                if repair:
                    self.storage.set_balance(user_id, computed)
                discrepancies.append(BalanceDiscrepancy(
                    user_id=user_id, cached_balance=cached, computed_balance=computed, repaired=repair,
                ))
        return discrepancies

    def _find_transaction(self, transaction_id: Union[UUID, str], for_update: bool = False) -> Optional[BonusTransaction]:
        try:
            transaction_id = transaction_id if isinstance(transaction_id, UUID) else UUID(str(transaction_id))
        except ValueError:
            return None
        data = self.storage.get_transaction(transaction_id, for_update=for_update)
        return BonusTransaction(**data) if data else None

    def _check_funds(self, user_id: str, debit: int) -> None:
        balance = self.storage.get_balance(user_id, for_update=True)
        if balance is None:
            raise UserNotFoundError(f"User {user_id} not found")
        if not self.allow_overdraft and balance + debit < 0:
            raise InsufficientBalanceError(
                f"User {user_id} has {balance} points, cannot debit {abs(debit)}"
            )

    def _appointment_transactions(self, appointment_id: str) -> list[BonusTransaction]:
        return [BonusTransaction(**t) for t in self.storage.list_transactions(appointment_id=appointment_id)]
