from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, create_engine, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from responder_gateway.domain.errors import IdentityAlreadyRegisteredError, TenantAlreadyExistsError
from responder_gateway.domain.interfaces import ConnectionStatusStore, QuotaLog, TenantStore
from responder_gateway.domain.models import (
    OperatingHours,
    QuotaTier,
    QuotaWindowRecord,
    ResponderEntry,
    SessionState,
    SessionStatus,
    Subscription,
    SubscriptionState,
    Tenant,
)


class Base(DeclarativeBase):
    pass


class TenantRow(Base):
    __tablename__ = "tenants"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    quota_tier: Mapped[str] = mapped_column(String(32), nullable=False)
    subscription_state: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    subscription: Mapped[dict] = mapped_column(JSON, nullable=False)
    hours: Mapped[dict] = mapped_column(JSON, nullable=False)
    fallback_message: Mapped[str] = mapped_column(String(1000), nullable=False)
    responders: Mapped[list] = mapped_column(JSON, nullable=False)
    operator_identities: Mapped[list] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TenantIdentityRow(Base):
    __tablename__ = "tenant_identities"

    identity: Mapped[str] = mapped_column(String(32), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.tenant_id"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class ConnectionStatusRow(Base):
    __tablename__ = "connection_status"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    state: Mapped[str] = mapped_column(String(32), nullable=False)
    last_connected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_disconnected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    disconnect_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    last_successful_outbound_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_inbound_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class QuotaEventRow(Base):
    __tablename__ = "quota_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    sender: Mapped[str] = mapped_column(String(32), nullable=False)
    hour_key: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    day_key: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    month_key: Mapped[str] = mapped_column(String(8), nullable=False, index=True)
    outcome: Mapped[str | None] = mapped_column(String(32), nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class PostgresSessionFactory:
    def __init__(self, dsn: str) -> None:
        self.engine = create_engine(dsn, future=True, pool_pre_ping=True)
        self._sessionmaker = sessionmaker(bind=self.engine, class_=Session, autoflush=False, autocommit=False)

    def create_all(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def session(self) -> Session:
        return self._sessionmaker()


def _aware(value: datetime | None) -> datetime | None:
    # sqlite drops tzinfo on round-trip
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class PostgresTenantStore(TenantStore):
    def __init__(self, session_factory: PostgresSessionFactory) -> None:
        self._sf = session_factory

    def create_tenant(self, tenant: Tenant) -> None:
        with self._sf.session() as session:
            if session.get(TenantRow, tenant.tenant_id) is not None:
                raise TenantAlreadyExistsError(tenant.tenant_id)
            self._check_identities(session, tenant)
            session.add(self._to_row(tenant))
            session.flush()
            self._write_identities(session, tenant)
            self._commit(session, tenant)

    def upsert_tenant(self, tenant: Tenant) -> None:
        with self._sf.session() as session:
            self._check_identities(session, tenant)
            row = session.get(TenantRow, tenant.tenant_id)
            if row is None:
                session.add(self._to_row(tenant))
                session.flush()
            else:
                self._apply(row, tenant)
            session.execute(
                delete(TenantIdentityRow)
                .where(TenantIdentityRow.tenant_id == tenant.tenant_id)
                .execution_options(synchronize_session=False)
            )
            self._write_identities(session, tenant)
            self._commit(session, tenant)

    def get_tenant(self, tenant_id: str) -> Tenant | None:
        with self._sf.session() as session:
            row = session.get(TenantRow, tenant_id)
            if row is None:
                return None
            return self._from_row(session, row)

    def find_by_identity(self, identity: str) -> Tenant | None:
        with self._sf.session() as session:
            tenant_id = session.execute(
                select(TenantIdentityRow.tenant_id).where(TenantIdentityRow.identity == identity)
            ).scalar_one_or_none()
            if tenant_id is None:
                return None
            row = session.get(TenantRow, tenant_id)
            if row is None:
                return None
            return self._from_row(session, row)

    def list_tenants(self, states: set[SubscriptionState] | None = None) -> list[Tenant]:
        with self._sf.session() as session:
            stmt = select(TenantRow).order_by(TenantRow.tenant_id)
            if states is not None:
                stmt = stmt.where(TenantRow.subscription_state.in_([state.value for state in states]))
            rows = session.execute(stmt).scalars().all()
            return [self._from_row(session, row) for row in rows]

    @staticmethod
    def _check_identities(session: Session, tenant: Tenant) -> None:
        if not tenant.identities:
            return
        stmt = select(TenantIdentityRow.identity, TenantIdentityRow.tenant_id).where(
            TenantIdentityRow.identity.in_(tenant.identities)
        )
        for identity, owner_id in session.execute(stmt):
            if owner_id != tenant.tenant_id:
                raise IdentityAlreadyRegisteredError(identity)

    @staticmethod
    def _write_identities(session: Session, tenant: Tenant) -> None:
        for position, identity in enumerate(tenant.identities):
            session.add(TenantIdentityRow(identity=identity, tenant_id=tenant.tenant_id, position=position))

    @staticmethod
    def _commit(session: Session, tenant: Tenant) -> None:
        try:
            session.commit()
        except IntegrityError as exc:
            # a concurrent writer claimed one of the identities after our check
            session.rollback()
            raise IdentityAlreadyRegisteredError(",".join(tenant.identities)) from exc

    @staticmethod
    def _to_row(tenant: Tenant) -> TenantRow:
        row = TenantRow(tenant_id=tenant.tenant_id, created_at=tenant.created_at)
        PostgresTenantStore._apply(row, tenant)
        return row

    @staticmethod
    def _apply(row: TenantRow, tenant: Tenant) -> None:
        row.name = tenant.name
        row.quota_tier = tenant.quota_tier.value
        row.subscription_state = tenant.subscription.state.value
        row.subscription = tenant.subscription.model_dump(mode="json")
        row.hours = tenant.hours.model_dump(mode="json")
        row.fallback_message = tenant.fallback_message
        row.responders = [entry.model_dump(mode="json") for entry in tenant.responders]
        row.operator_identities = list(tenant.operator_identities)
        row.updated_at = tenant.updated_at

    @staticmethod
    def _from_row(session: Session, row: TenantRow) -> Tenant:
        stmt = (
            select(TenantIdentityRow.identity)
            .where(TenantIdentityRow.tenant_id == row.tenant_id)
            .order_by(TenantIdentityRow.position)
        )
        identities = list(session.execute(stmt).scalars())
        return Tenant(
            tenant_id=row.tenant_id,
            name=row.name,
            identities=identities,
            quota_tier=QuotaTier(row.quota_tier),
            subscription=Subscription.model_validate(row.subscription),
            hours=OperatingHours.model_validate(row.hours),
            fallback_message=row.fallback_message,
            responders=[ResponderEntry.model_validate(entry) for entry in row.responders],
            operator_identities=list(row.operator_identities),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )


class PostgresConnectionStatusStore(ConnectionStatusStore):
    def __init__(self, session_factory: PostgresSessionFactory) -> None:
        self._sf = session_factory

    def save_status(self, status: SessionStatus) -> None:
        with self._sf.session() as session:
            row = ConnectionStatusRow(
                tenant_id=status.tenant_id,
                state=status.state.value,
                last_connected_at=status.last_connected_at,
                last_disconnected_at=status.last_disconnected_at,
                disconnect_reason=status.disconnect_reason,
                last_successful_outbound_at=status.last_successful_outbound_at,
                last_inbound_at=status.last_inbound_at,
                notified=status.notified,
                updated_at=status.updated_at,
            )
            session.merge(row)
            session.commit()

    def get_status(self, tenant_id: str) -> SessionStatus | None:
        with self._sf.session() as session:
            row = session.get(ConnectionStatusRow, tenant_id)
            if row is None:
                return None
            return _status_from_row(row)

    def list_statuses(self, states: set[SessionState] | None = None) -> list[SessionStatus]:
        with self._sf.session() as session:
            stmt = select(ConnectionStatusRow).order_by(ConnectionStatusRow.tenant_id)
            if states is not None:
                stmt = stmt.where(ConnectionStatusRow.state.in_([state.value for state in states]))
            return [_status_from_row(row) for row in session.execute(stmt).scalars()]

    def mark_notified(self, tenant_id: str) -> bool:
        with self._sf.session() as session:
            row = session.get(ConnectionStatusRow, tenant_id)
            if row is None:
                return False
            row.notified = True
            session.commit()
            return True


def _status_from_row(row: ConnectionStatusRow) -> SessionStatus:
    return SessionStatus(
        tenant_id=row.tenant_id,
        state=SessionState(row.state),
        last_connected_at=_aware(row.last_connected_at),
        last_disconnected_at=_aware(row.last_disconnected_at),
        disconnect_reason=row.disconnect_reason,
        last_successful_outbound_at=_aware(row.last_successful_outbound_at),
        last_inbound_at=_aware(row.last_inbound_at),
        notified=row.notified,
        updated_at=_aware(row.updated_at),
    )


class PostgresQuotaLog(QuotaLog):
    def __init__(self, session_factory: PostgresSessionFactory) -> None:
        self._sf = session_factory

    def append(self, record: QuotaWindowRecord) -> None:
        with self._sf.session() as session:
            session.add(
                QuotaEventRow(
                    tenant_id=record.tenant_id,
                    sender=record.sender,
                    hour_key=record.hour_key,
                    day_key=record.day_key,
                    month_key=record.month_key,
                    outcome=record.outcome,
                    category=record.category,
                    created_at=record.created_at,
                )
            )
            session.commit()

    def count_hour(self, tenant_id: str, sender: str, hour_key: str) -> int:
        return self._count(QuotaEventRow.hour_key == hour_key, tenant_id=tenant_id, sender=sender)

    def count_day(self, tenant_id: str, sender: str, day_key: str) -> int:
        return self._count(QuotaEventRow.day_key == day_key, tenant_id=tenant_id, sender=sender)

    def count_month(self, tenant_id: str, sender: str, month_key: str) -> int:
        return self._count(QuotaEventRow.month_key == month_key, tenant_id=tenant_id, sender=sender)

    def count_tenant_month(self, tenant_id: str, month_key: str) -> int:
        return self._count(QuotaEventRow.month_key == month_key, tenant_id=tenant_id)

    def _count(self, bucket_clause, *, tenant_id: str, sender: str | None = None) -> int:
        stmt = select(func.count(QuotaEventRow.id)).where(QuotaEventRow.tenant_id == tenant_id, bucket_clause)
        if sender is not None:
            stmt = stmt.where(QuotaEventRow.sender == sender)
        with self._sf.session() as session:
            return int(session.execute(stmt).scalar_one())
