from __future__ import annotations

import time
from typing import Any

from sqlalchemy import (
    Boolean,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    case,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from pool_gateway.models import (
    Account,
    ConsumptionRecord,
    ModelQuota,
    SharedPoolSummary,
    SharedQuotaPool,
    User,
)


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    api_key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    prefer_shared: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)


class AccountRow(Base):
    __tablename__ = "accounts"
    __table_args__ = (Index("ix_accounts_shared_enabled", "is_shared", "enabled"),)

    cookie_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    is_shared: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    needs_reauth: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    project_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_restricted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)


class ModelQuotaRow(Base):
    __tablename__ = "model_quotas"
    __table_args__ = (
        UniqueConstraint("cookie_id", "model_name", name="uq_model_quotas_cookie_model"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cookie_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("accounts.cookie_id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    model_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quota: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    reset_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_fetched_at: Mapped[float | None] = mapped_column(Float, nullable=True)


class SharedQuotaPoolRow(Base):
    __tablename__ = "user_shared_quota_pool"
    __table_args__ = (
        UniqueConstraint("user_id", "model_name", name="uq_shared_pool_user_model"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    model_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quota: Mapped[float] = mapped_column(Float, nullable=False)
    max_quota: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)


class ConsumptionRow(Base):
    __tablename__ = "quota_consumption_log"
    __table_args__ = (Index("ix_consumption_user_time", "user_id", "consumed_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    cookie_id: Mapped[str] = mapped_column(String(64), nullable=False)
    model_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quota_before: Mapped[float] = mapped_column(Float, nullable=False)
    quota_after: Mapped[float] = mapped_column(Float, nullable=False)
    quota_consumed: Mapped[float] = mapped_column(Float, nullable=False)
    is_shared: Mapped[bool] = mapped_column(Boolean, nullable=False)
    consumed_at: Mapped[float] = mapped_column(Float, nullable=False)


class SqlStore:
    """SQLAlchemy-backed store; works on SQLite (aiosqlite) and PostgreSQL."""

    def __init__(self, database_url: str, *, echo: bool = False) -> None:
        self._engine: AsyncEngine = create_async_engine(database_url, echo=echo)
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False)

    @property
    def dialect_name(self) -> str:
        return self._engine.dialect.name

    async def initialize(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    def _insert(self, table: Any) -> Any:
        if self.dialect_name == "postgresql":
            return postgresql.insert(table)
        if self.dialect_name == "sqlite":
            return sqlite.insert(table)
        raise RuntimeError(f"Unsupported database dialect '{self.dialect_name}'.")

    # users

    async def get_user(self, user_id: str) -> User | None:
        async with self._sessions() as session:
            row = await session.get(UserRow, user_id)
            return _user_from_row(row) if row else None

    async def get_user_by_api_key(self, api_key: str) -> User | None:
        async with self._sessions() as session:
            row = await session.scalar(select(UserRow).where(UserRow.api_key == api_key))
            return _user_from_row(row) if row else None

    async def create_user(self, user: User) -> User:
        async with self._sessions.begin() as session:
            if await session.get(UserRow, user.user_id) is not None:
                raise ValueError(f"User '{user.user_id}' already exists.")
            taken = await session.scalar(
                select(UserRow.user_id).where(UserRow.api_key == user.api_key)
            )
            if taken is not None:
                raise ValueError("API key is already assigned.")
            session.add(
                UserRow(
                    user_id=user.user_id,
                    api_key=user.api_key,
                    name=user.name,
                    prefer_shared=user.prefer_shared,
                    enabled=user.enabled,
                    created_at=user.created_at,
                )
            )
        return user

    async def update_user(
        self,
        user_id: str,
        *,
        prefer_shared: bool | None = None,
        enabled: bool | None = None,
    ) -> User | None:
        async with self._sessions.begin() as session:
            row = await session.get(UserRow, user_id)
            if row is None:
                return None
            if prefer_shared is not None:
                row.prefer_shared = prefer_shared
            if enabled is not None:
                row.enabled = enabled
            return _user_from_row(row)

    async def list_users(self) -> list[User]:
        async with self._sessions() as session:
            rows = await session.scalars(select(UserRow).order_by(UserRow.created_at))
            return [_user_from_row(row) for row in rows]

    async def delete_user(self, user_id: str) -> bool:
        async with self._sessions.begin() as session:
            result = await session.execute(
                delete(UserRow).where(UserRow.user_id == user_id)
            )
            return bool(result.rowcount)

    # accounts

    async def get_account(self, cookie_id: str) -> Account | None:
        async with self._sessions() as session:
            row = await session.get(AccountRow, cookie_id)
            return _account_from_row(row) if row else None

    async def list_accounts(
        self,
        *,
        user_id: str | None = None,
        is_shared: bool | None = None,
        enabled_only: bool = False,
    ) -> list[Account]:
        statement = select(AccountRow)
        if user_id is not None:
            statement = statement.where(AccountRow.user_id == user_id)
        if is_shared is not None:
            statement = statement.where(AccountRow.is_shared == is_shared)
        if enabled_only:
            statement = statement.where(
                AccountRow.enabled.is_(True), AccountRow.needs_reauth.is_(False)
            )
        statement = statement.order_by(AccountRow.created_at, AccountRow.cookie_id)
        async with self._sessions() as session:
            rows = await session.scalars(statement)
            return [_account_from_row(row) for row in rows]

    async def upsert_account(self, account: Account) -> Account:
        now = time.time()
        values = {
            "cookie_id": account.cookie_id,
            "user_id": account.user_id,
            "is_shared": account.is_shared,
            "access_token": account.access_token,
            "refresh_token": account.refresh_token,
            "expires_at": account.expires_at,
            "enabled": account.enabled,
            "needs_reauth": account.needs_reauth,
            "project_id": account.project_id,
            "is_restricted": account.is_restricted,
            "name": account.name,
            "email": account.email,
            "created_at": account.created_at,
            "updated_at": now,
        }
        statement = self._insert(AccountRow).values(**values)
        updatable = {
            key: statement.excluded[key]
            for key in values
            if key not in {"cookie_id", "created_at"}
        }
        statement = statement.on_conflict_do_update(
            index_elements=[AccountRow.cookie_id], set_=updatable
        )
        async with self._sessions.begin() as session:
            await session.execute(statement)
        stored = await self.get_account(account.cookie_id)
        if stored is None:
            raise RuntimeError(f"Account '{account.cookie_id}' was not written.")
        return stored

    async def update_token(
        self,
        cookie_id: str,
        *,
        access_token: str,
        expires_at: float | None,
        refresh_token: str | None = None,
    ) -> Account | None:
        values: dict[str, Any] = {
            "access_token": access_token,
            "expires_at": expires_at,
            "updated_at": time.time(),
        }
        if refresh_token:
            values["refresh_token"] = refresh_token
        return await self._update_account(cookie_id, values)

    async def set_status(
        self,
        cookie_id: str,
        *,
        enabled: bool,
        needs_reauth: bool | None = None,
    ) -> Account | None:
        values: dict[str, Any] = {"enabled": enabled, "updated_at": time.time()}
        if needs_reauth is not None:
            values["needs_reauth"] = needs_reauth
        return await self._update_account(cookie_id, values)

    async def _update_account(
        self, cookie_id: str, values: dict[str, Any]
    ) -> Account | None:
        async with self._sessions.begin() as session:
            result = await session.execute(
                update(AccountRow)
                .where(AccountRow.cookie_id == cookie_id)
                .values(**values)
            )
            if not result.rowcount:
                return None
        return await self.get_account(cookie_id)

    async def delete_account(self, cookie_id: str) -> bool:
        async with self._sessions.begin() as session:
            await session.execute(
                delete(ModelQuotaRow).where(ModelQuotaRow.cookie_id == cookie_id)
            )
            result = await session.execute(
                delete(AccountRow).where(AccountRow.cookie_id == cookie_id)
            )
            return bool(result.rowcount)

    async def count_enabled_shared(self) -> int:
        statement = select(func.count()).select_from(AccountRow).where(
            AccountRow.is_shared.is_(True),
            AccountRow.enabled.is_(True),
            AccountRow.needs_reauth.is_(False),
        )
        async with self._sessions() as session:
            return int(await session.scalar(statement) or 0)

    # quotas

    async def get_quota(self, cookie_id: str, model_name: str) -> ModelQuota | None:
        async with self._sessions() as session:
            row = await session.scalar(
                select(ModelQuotaRow).where(
                    ModelQuotaRow.cookie_id == cookie_id,
                    ModelQuotaRow.model_name == model_name,
                )
            )
            return _quota_from_row(row) if row else None

    async def list_quotas(self, cookie_id: str) -> list[ModelQuota]:
        async with self._sessions() as session:
            rows = await session.scalars(
                select(ModelQuotaRow)
                .where(ModelQuotaRow.cookie_id == cookie_id)
                .order_by(ModelQuotaRow.model_name)
            )
            return [_quota_from_row(row) for row in rows]

    async def upsert_quotas(self, cookie_id: str, quotas: list[ModelQuota]) -> None:
        if not quotas:
            return
        async with self._sessions.begin() as session:
            for quota in quotas:
                statement = self._insert(ModelQuotaRow).values(
                    cookie_id=cookie_id,
                    model_name=quota.model_name,
                    quota=quota.quota,
                    reset_at=quota.reset_at,
                    available=quota.available,
                    last_fetched_at=quota.last_fetched_at,
                )
                statement = statement.on_conflict_do_update(
                    index_elements=[ModelQuotaRow.cookie_id, ModelQuotaRow.model_name],
                    set_={
                        "quota": statement.excluded.quota,
                        "reset_at": statement.excluded.reset_at,
                        "last_fetched_at": statement.excluded.last_fetched_at,
                    },
                )
                await session.execute(statement)

    async def set_quota_status(
        self, cookie_id: str, model_name: str, *, available: bool
    ) -> ModelQuota | None:
        async with self._sessions.begin() as session:
            result = await session.execute(
                update(ModelQuotaRow)
                .where(
                    ModelQuotaRow.cookie_id == cookie_id,
                    ModelQuotaRow.model_name == model_name,
                )
                .values(available=available)
            )
            if not result.rowcount:
                return None
        return await self.get_quota(cookie_id, model_name)

    async def get_shared_pool(
        self, user_id: str, model_name: str
    ) -> SharedQuotaPool | None:
        async with self._sessions() as session:
            row = await session.scalar(
                select(SharedQuotaPoolRow).where(
                    SharedQuotaPoolRow.user_id == user_id,
                    SharedQuotaPoolRow.model_name == model_name,
                )
            )
            return _pool_from_row(row) if row else None

    async def list_shared_pools(self, user_id: str) -> list[SharedQuotaPool]:
        async with self._sessions() as session:
            rows = await session.scalars(
                select(SharedQuotaPoolRow)
                .where(SharedQuotaPoolRow.user_id == user_id)
                .order_by(SharedQuotaPoolRow.model_name)
            )
            return [_pool_from_row(row) for row in rows]

    async def upsert_shared_ceiling(
        self, user_id: str, model_name: str, ceiling: float
    ) -> SharedQuotaPool:
        table = SharedQuotaPoolRow.__table__
        statement = self._insert(SharedQuotaPoolRow).values(
            user_id=user_id,
            model_name=model_name,
            quota=ceiling,
            max_quota=ceiling,
            updated_at=time.time(),
        )
        statement = statement.on_conflict_do_update(
            index_elements=[SharedQuotaPoolRow.user_id, SharedQuotaPoolRow.model_name],
            set_={
                "quota": case(
                    (table.c.quota < statement.excluded.quota, statement.excluded.quota),
                    else_=table.c.quota,
                ),
                "max_quota": statement.excluded.max_quota,
                "updated_at": statement.excluded.updated_at,
            },
        )
        async with self._sessions.begin() as session:
            await session.execute(statement)
        pool = await self.get_shared_pool(user_id, model_name)
        if pool is None:
            raise RuntimeError(
                f"Shared quota row for user '{user_id}' model '{model_name}' was not written."
            )
        return pool

    async def deduct_shared_pool(
        self, user_id: str, model_name: str, amount: float
    ) -> SharedQuotaPool | None:
        remaining = SharedQuotaPoolRow.quota - amount
        async with self._sessions.begin() as session:
            result = await session.execute(
                update(SharedQuotaPoolRow)
                .where(
                    SharedQuotaPoolRow.user_id == user_id,
                    SharedQuotaPoolRow.model_name == model_name,
                )
                .values(
                    quota=case((remaining < 0, 0.0), else_=remaining),
                    updated_at=time.time(),
                )
            )
            if not result.rowcount:
                return None
        return await self.get_shared_pool(user_id, model_name)

    async def shared_pool_summary(
        self, model_name: str | None = None
    ) -> list[SharedPoolSummary]:
        statement = (
            select(
                ModelQuotaRow.model_name,
                func.sum(ModelQuotaRow.quota),
                func.min(ModelQuotaRow.reset_at),
                func.count(func.distinct(ModelQuotaRow.cookie_id)),
            )
            .join(AccountRow, AccountRow.cookie_id == ModelQuotaRow.cookie_id)
            .where(
                AccountRow.is_shared.is_(True),
                AccountRow.enabled.is_(True),
                AccountRow.needs_reauth.is_(False),
                ModelQuotaRow.available.is_(True),
            )
            .group_by(ModelQuotaRow.model_name)
            .order_by(ModelQuotaRow.model_name)
        )
        if model_name is not None:
            statement = statement.where(ModelQuotaRow.model_name == model_name)
        async with self._sessions() as session:
            result = await session.execute(statement)
            return [
                SharedPoolSummary(
                    model_name=name,
                    total_quota=float(total or 0.0),
                    earliest_reset=earliest,
                    available_accounts=int(count or 0),
                )
                for name, total, earliest, count in result.all()
            ]

    # consumption log

    async def append(self, record: ConsumptionRecord) -> None:
        async with self._sessions.begin() as session:
            session.add(
                ConsumptionRow(
                    user_id=record.user_id,
                    cookie_id=record.cookie_id,
                    model_name=record.model_name,
                    quota_before=record.quota_before,
                    quota_after=record.quota_after,
                    quota_consumed=record.quota_consumed,
                    is_shared=record.is_shared,
                    consumed_at=record.consumed_at,
                )
            )

    async def list_for_user(
        self,
        user_id: str,
        *,
        limit: int = 100,
        since: float | None = None,
        until: float | None = None,
    ) -> list[ConsumptionRecord]:
        statement = select(ConsumptionRow).where(ConsumptionRow.user_id == user_id)
        if since is not None:
            statement = statement.where(ConsumptionRow.consumed_at >= since)
        if until is not None:
            statement = statement.where(ConsumptionRow.consumed_at <= until)
        statement = statement.order_by(ConsumptionRow.consumed_at.desc()).limit(
            max(0, limit)
        )
        async with self._sessions() as session:
            rows = await session.scalars(statement)
            return [_consumption_from_row(row) for row in rows]


def _user_from_row(row: UserRow) -> User:
    return User(
        user_id=row.user_id,
        api_key=row.api_key,
        name=row.name,
        prefer_shared=bool(row.prefer_shared),
        enabled=bool(row.enabled),
        created_at=row.created_at,
    )


def _account_from_row(row: AccountRow) -> Account:
    return Account(
        cookie_id=row.cookie_id,
        user_id=row.user_id,
        is_shared=bool(row.is_shared),
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        expires_at=row.expires_at,
        enabled=bool(row.enabled),
        needs_reauth=bool(row.needs_reauth),
        project_id=row.project_id,
        is_restricted=bool(row.is_restricted),
        name=row.name,
        email=row.email,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _quota_from_row(row: ModelQuotaRow) -> ModelQuota:
    return ModelQuota(
        cookie_id=row.cookie_id,
        model_name=row.model_name,
        quota=float(row.quota),
        reset_at=row.reset_at,
        available=bool(row.available),
        last_fetched_at=row.last_fetched_at,
    )


def _pool_from_row(row: SharedQuotaPoolRow) -> SharedQuotaPool:
    return SharedQuotaPool(
        user_id=row.user_id,
        model_name=row.model_name,
        quota=float(row.quota),
        max_quota=float(row.max_quota),
        updated_at=row.updated_at,
    )


def _consumption_from_row(row: ConsumptionRow) -> ConsumptionRecord:
    return ConsumptionRecord(
        user_id=row.user_id,
        cookie_id=row.cookie_id,
        model_name=row.model_name,
        quota_before=float(row.quota_before),
        quota_after=float(row.quota_after),
        quota_consumed=float(row.quota_consumed),
        is_shared=bool(row.is_shared),
        consumed_at=row.consumed_at,
    )
