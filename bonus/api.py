import logging
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from . import config
from .models import (
    BonusSettings, BonusTransaction, UpdateSettingsRequest, UpdateStatusRequest,
    RegisterUserRequest, RegisteredUser, BookingBonusRequest, ReferralBonusRequest,
    SpendBonusRequest, ManualAdjustmentRequest, ReferralResult, AppointmentResult,
    ReferredUser, UserSummary, UserBalance, BalanceDiscrepancy,
)
from .service import (
    BonusService, LedgerServiceError, UserNotFoundError, UserAlreadyExistsError,
    InvalidStateTransitionError, IdempotencyConflictError, StaleTransactionError,
)
from .storage import InMemoryStorage, SqlAlchemyStorage

logger = logging.getLogger(__name__)


def build_service() -> BonusService:
    if config.DATABASE_URL:
        from .db import make_engine
        storage = SqlAlchemyStorage(make_engine(config.DATABASE_URL, echo=config.DB_ECHO))
    else:
        logger.warning("DATABASE_URL not set, bonus ledger is using in-memory storage")
        storage = InMemoryStorage()
    return BonusService(storage)


def _raise_http(error: LedgerServiceError):
    if isinstance(error, UserNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, (IdempotencyConflictError, UserAlreadyExistsError, StaleTransactionError)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))


def create_app(service: Optional[BonusService] = None) -> FastAPI:
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    bonus_service = service or build_service()
    bonus_service.initialize()

    app = FastAPI(
        title="Bonus Ledger API",
        description="Bonus point ledger for wellness-center bookings, referrals and redemptions",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.bonus_service = bonus_service

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "bonus-ledger"}

    @app.get("/settings", response_model=BonusSettings, tags=["Settings"])
    def get_settings() -> BonusSettings:
        return bonus_service.get_settings()

    @app.put("/settings", response_model=BonusSettings, tags=["Settings"])
    def update_settings(request: UpdateSettingsRequest) -> BonusSettings:
        return bonus_service.update_settings(request)

    @app.post("/users", response_model=RegisteredUser, status_code=status.HTTP_201_CREATED, tags=["Users"])
    def register_user(request: RegisterUserRequest) -> RegisteredUser:
        try:
            return bonus_service.register_user(
                request.id, request.email, request.first_name, request.last_name, request.referral_code,
            )
        except LedgerServiceError as e:
            _raise_http(e)

    @app.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
    def get_user_balance(user_id: str) -> UserBalance:
        return UserBalance(user_id=user_id, bonus_balance=bonus_service.get_user_balance(user_id))

    @app.get("/users/{user_id}/transactions", response_model=list[BonusTransaction], tags=["Users"])
    def get_user_transactions(user_id: str) -> list[BonusTransaction]:
        return bonus_service.get_user_transactions(user_id)

    @app.get("/users/{user_id}/referrals", response_model=list[ReferredUser], tags=["Users"])
    def get_referred_users(user_id: str) -> list[ReferredUser]:
        return bonus_service.get_referred_users(user_id)

    @app.get("/users/{user_id}/referrer", response_model=Optional[UserSummary], tags=["Users"])
    def get_referrer(user_id: str) -> Optional[UserSummary]:
        return bonus_service.get_referrer(user_id)

    @app.get("/transactions", response_model=list[BonusTransaction], tags=["Transactions"])
    def list_transactions(user_id: Optional[str] = None) -> list[BonusTransaction]:
        if user_id:
            return bonus_service.get_user_transactions(user_id)
        return bonus_service.get_all_transactions()

    @app.post("/transactions", response_model=BonusTransaction, status_code=status.HTTP_201_CREATED, tags=["Transactions"])
    def manual_adjustment(request: ManualAdjustmentRequest) -> BonusTransaction:
        try:
            return bonus_service.manual_adjustment(request.user_id, request.amount, request.description)
        except LedgerServiceError as e:
            _raise_http(e)

    @app.get("/transactions/{transaction_id}", response_model=BonusTransaction, tags=["Transactions"])
    def get_transaction(transaction_id: UUID) -> BonusTransaction:
        transaction = bonus_service.get_transaction_by_id(transaction_id)
        if transaction is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Transaction {transaction_id} not found")
        return transaction

    @app.patch("/transactions/{transaction_id}/status", response_model=BonusTransaction, tags=["Transactions"])
    def update_transaction_status(transaction_id: UUID, request: UpdateStatusRequest) -> BonusTransaction:
        try:
            transaction = bonus_service.update_transaction_status(transaction_id, request.status)
        except LedgerServiceError as e:
            _raise_http(e)
        if transaction is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Transaction {transaction_id} not found")
        return transaction

    @app.post("/bookings/bonus", response_model=BonusTransaction, status_code=status.HTTP_201_CREATED, tags=["Rewards"])
    def add_booking_bonus(request: BookingBonusRequest) -> BonusTransaction:
        try:
            return bonus_service.add_booking_bonus(request.user_id, request.appointment_id)
        except LedgerServiceError as e:
            _raise_http(e)

    @app.post("/referrals", response_model=ReferralResult, status_code=status.HTTP_201_CREATED, tags=["Rewards"])
    def add_referral_bonus(request: ReferralBonusRequest) -> ReferralResult:
        try:
            return bonus_service.add_referral_bonus(request.referrer_id, request.referred_id)
        except LedgerServiceError as e:
            _raise_http(e)

    @app.post("/spend", response_model=BonusTransaction, status_code=status.HTTP_201_CREATED, tags=["Rewards"])
    def spend_bonus(request: SpendBonusRequest) -> BonusTransaction:
        try:
            return bonus_service.spend_bonus(request.user_id, request.amount, request.appointment_id)
        except LedgerServiceError as e:
            _raise_http(e)

    @app.post("/appointments/{appointment_id}/complete", response_model=AppointmentResult, tags=["Appointments"])
    def complete_appointment(appointment_id: str) -> AppointmentResult:
        return bonus_service.settle_appointment(appointment_id)

    @app.post("/appointments/{appointment_id}/cancel", response_model=AppointmentResult, tags=["Appointments"])
    def cancel_appointment(appointment_id: str) -> AppointmentResult:
        try:
            return bonus_service.cancel_appointment(appointment_id)
        except LedgerServiceError as e:
            _raise_http(e)

    @app.get("/audit/balances", response_model=list[BalanceDiscrepancy], tags=["Admin"])
    def audit_balances() -> list[BalanceDiscrepancy]:
        return bonus_service.reconcile_balances()

    @app.post("/audit/balances/repair", response_model=list[BalanceDiscrepancy], tags=["Admin"])
    def repair_balances() -> list[BalanceDiscrepancy]:
        return bonus_service.reconcile_balances(repair=True)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
