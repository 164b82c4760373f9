from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
import json
import time
from typing import Iterator

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from shipyard.domain.events import EventType, normalize_event_type
from shipyard.domain.models import CronExecutionStatus, DeploymentStatus
from shipyard.repository import (
    CRON_MUTABLE_FIELDS,
    DEPLOYMENT_MUTABLE_FIELDS,
    CronExecutionCreateRecord,
    CronJobCreateRecord,
    DeploymentCreateRecord,
    ProjectCreateRecord,
    iso_utc,
    new_id,
    utc_now,
)


class Base(DeclarativeBase):
    pass


class ProjectEntity(Base):
    __tablename__ = 'projects'

    project_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    repo_url: Mapped[str] = mapped_column(Text(), nullable=False)
    production_branch: Mapped[str | None] = mapped_column(String(255), nullable=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    member_ids_json: Mapped[str] = mapped_column(Text(), nullable=False)
    env_vars_json: Mapped[str] = mapped_column(Text(), nullable=False)
    build_overrides_json: Mapped[str] = mapped_column(Text(), nullable=False)
    webhook_secrets_json: Mapped[str] = mapped_column(Text(), nullable=False)
    tier: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class DeploymentEntity(Base):
    __tablename__ = 'deployments'
    __table_args__ = (
        UniqueConstraint('project_id', 'idempotency_key', name='uq_deployments_project_id_idempotency_key'),
    )

    seq: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    deployment_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    project_id: Mapped[str] = mapped_column(String(64), ForeignKey('projects.project_id', ondelete='CASCADE'), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    branch: Mapped[str] = mapped_column(String(255), nullable=False)
    commit_sha: Mapped[str] = mapped_column(String(64), nullable=False)
    commit_message: Mapped[str] = mapped_column(Text(), nullable=False)
    is_preview: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    pr_number: Mapped[int | None] = mapped_column(Integer(), nullable=True)
    trigger: Mapped[str] = mapped_column(String(32), nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    queued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ready_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    build_duration_ms: Mapped[int | None] = mapped_column(Integer(), nullable=True)
    artifact_location: Mapped[str | None] = mapped_column(Text(), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=False)
    error_reason: Mapped[str | None] = mapped_column(Text(), nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)
    log_tail: Mapped[str | None] = mapped_column(Text(), nullable=True)
    framework: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean(), nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class DeploymentEventEntity(Base):
    __tablename__ = 'deployment_events'
    __table_args__ = (
        UniqueConstraint('deployment_id', 'seq', name='uq_deployment_events_deployment_id_seq'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    deployment_id: Mapped[str] = mapped_column(
        String(64), ForeignKey('deployments.deployment_id', ondelete='CASCADE'), nullable=False, index=True,
    )
    project_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer(), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CronJobEntity(Base):
    __tablename__ = 'cron_jobs'

    cron_job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(64), ForeignKey('projects.project_id', ondelete='CASCADE'), nullable=False, index=True)
    schedule: Mapped[str] = mapped_column(String(128), nullable=False)
    path: Mapped[str] = mapped_column(Text(), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean(), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    timeout_seconds: Mapped[int] = mapped_column(Integer(), nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer(), nullable=False)
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CronExecutionEntity(Base):
    __tablename__ = 'cron_executions'

    execution_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    cron_job_id: Mapped[str] = mapped_column(
        String(64), ForeignKey('cron_jobs.cron_job_id', ondelete='CASCADE'), nullable=False, index=True,
    )
    attempt: Mapped[int] = mapped_column(Integer(), nullable=False)
    trigger: Mapped[str] = mapped_column(String(32), nullable=False)
    external_trigger_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer(), nullable=True)
    output: Mapped[str] = mapped_column(Text(), nullable=False, default='')
    error_text: Mapped[str | None] = mapped_column(Text(), nullable=True)


class Database:
    def __init__(self, url: str):
        engine_kwargs: dict[str, object] = {
            'future': True,
        }
        if str(url or '').strip().lower().startswith('sqlite'):
            # Worker threads and the API share one engine.
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if self.engine.dialect.name == 'sqlite':
            self._configure_sqlite_pragmas()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _configure_sqlite_pragmas(self) -> None:
        with self.engine.connect() as conn:
            conn.exec_driver_sql('PRAGMA journal_mode=WAL')
            conn.exec_driver_sql('PRAGMA synchronous=NORMAL')
            conn.exec_driver_sql('PRAGMA foreign_keys=ON')
            conn.exec_driver_sql('PRAGMA busy_timeout=30000')


class SqlDeploymentRepository:
    def __init__(self, db: Database):
        self.db = db

    def _lock_retry_attempts(self) -> int:
        return 8 if self.db.engine.dialect.name == 'sqlite' else 1

    @staticmethod
    def _is_sqlite_lock_error(exc: Exception) -> bool:
        message = str(exc or '').lower()
        return 'database is locked' in message or 'database table is locked' in message

    @staticmethod
    def _lock_backoff_seconds(attempt: int) -> float:
        return min(0.2, 0.02 * (2 ** max(0, int(attempt) - 1)))

    def _write(self, fn, *, name: str):
        attempts = self._lock_retry_attempts()
        for attempt in range(1, attempts + 1):
            try:
                with self.db.session() as session:
                    return fn(session)
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt >= attempts:
                    raise
                time.sleep(self._lock_backoff_seconds(attempt))
        raise RuntimeError(f'{name}_retry_exhausted')

    def ping(self) -> bool:
        with self.db.session() as session:
            session.execute(text('SELECT 1'))
        return True

    # projects

    def create_project(self, record: ProjectCreateRecord) -> dict:
        row = ProjectEntity(
            project_id=new_id('prj'),
            name=record.name,
            slug=record.slug,
            repo_url=record.repo_url,
            production_branch=record.production_branch,
            owner_id=record.owner_id,
            member_ids_json=json.dumps(list(record.member_ids)),
            env_vars_json=json.dumps(dict(record.env_vars)),
            build_overrides_json=json.dumps(
                {
                    'install_command': record.install_command,
                    'build_command': record.build_command,
                    'output_directory': record.output_directory,
                    'framework': record.framework,
                }
            ),
            webhook_secrets_json=json.dumps(dict(record.webhook_secrets)),
            tier=record.tier,
            created_at=utc_now(),
        )

        def op(session: Session) -> dict:
            session.add(row)
            session.flush()
            return self._project_to_dict(row)

        try:
            return self._write(op, name='create_project')
        except IntegrityError as exc:
            raise ValueError(f'project slug already exists: {record.slug}') from exc

    def get_project(self, project_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(ProjectEntity, project_id)
            return self._project_to_dict(row) if row else None

    def list_projects(self, *, limit: int = 100) -> list[dict]:
        with self.db.session() as session:
            rows = session.execute(
                select(ProjectEntity).order_by(ProjectEntity.created_at.desc()).limit(limit)
            ).scalars().all()
            return [self._project_to_dict(r) for r in rows]

    # deployments

    def create_deployment(self, record: DeploymentCreateRecord) -> tuple[dict, bool]:
        def op(session: Session) -> tuple[dict, bool]:
            if session.get(ProjectEntity, record.project_id) is None:
                raise KeyError(record.project_id)
            if record.idempotency_key:
                existing = session.execute(
                    select(DeploymentEntity).where(
                        DeploymentEntity.project_id == record.project_id,
                        DeploymentEntity.idempotency_key == record.idempotency_key,
                    )
                ).scalar_one_or_none()
                if existing is not None:
                    return self._deployment_to_dict(existing), False
            now = utc_now()
            row = DeploymentEntity(
                deployment_id=new_id('dpl'),
                project_id=record.project_id,
                status=DeploymentStatus.QUEUED.value,
                branch=record.branch,
                commit_sha=record.commit_sha,
                commit_message=record.commit_message,
                is_preview=bool(record.is_preview),
                pr_number=record.pr_number,
                trigger=record.trigger,
                idempotency_key=record.idempotency_key,
                queued_at=now,
                is_active=False,
                cancel_requested=False,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            return self._deployment_to_dict(row), True

        try:
            return self._write(op, name='create_deployment')
        except IntegrityError:
            # Lost an insert race on the idempotency key; the winner's row is authoritative.
            if not record.idempotency_key:
                raise
            with self.db.session() as session:
                existing = session.execute(
                    select(DeploymentEntity).where(
                        DeploymentEntity.project_id == record.project_id,
                        DeploymentEntity.idempotency_key == record.idempotency_key,
                    )
                ).scalar_one()
                return self._deployment_to_dict(existing), False

    def _get_deployment_row(self, session: Session, deployment_id: str) -> DeploymentEntity | None:
        return session.execute(
            select(DeploymentEntity).where(DeploymentEntity.deployment_id == deployment_id)
        ).scalar_one_or_none()

    def get_deployment(self, deployment_id: str) -> dict | None:
        with self.db.session() as session:
            row = self._get_deployment_row(session, deployment_id)
            return self._deployment_to_dict(row) if row else None

    def list_deployments(self, *, project_id: str | None = None, limit: int = 100) -> list[dict]:
        with self.db.session() as session:
            stmt = select(DeploymentEntity)
            if project_id is not None:
                stmt = stmt.where(DeploymentEntity.project_id == project_id)
            rows = session.execute(stmt.order_by(DeploymentEntity.seq.desc()).limit(limit)).scalars().all()
            return [self._deployment_to_dict(r) for r in rows]

    def update_deployment_if(self, deployment_id: str, *, expected_status: str, **changes) -> dict | None:
        unknown = set(changes) - DEPLOYMENT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f'unsupported fields: {sorted(unknown)}')

        def op(session: Session) -> dict | None:
            result = session.execute(
                update(DeploymentEntity)
                .where(
                    DeploymentEntity.deployment_id == deployment_id,
                    DeploymentEntity.status == expected_status,
                )
                .values(**changes, updated_at=utc_now())
            )
            session.flush()
            row = self._get_deployment_row(session, deployment_id)
            if row is None:
                raise KeyError(deployment_id)
            if int(result.rowcount or 0) == 0:
                return None
            session.refresh(row)
            return self._deployment_to_dict(row)

        return self._write(op, name='update_deployment_if')

    def set_cancel_requested(self, deployment_id: str, *, requested: bool) -> dict:
        def op(session: Session) -> dict:
            row = self._get_deployment_row(session, deployment_id)
            if row is None:
                raise KeyError(deployment_id)
            row.cancel_requested = bool(requested)
            row.updated_at = utc_now()
            session.flush()
            return self._deployment_to_dict(row)

        return self._write(op, name='set_cancel_requested')

    def is_cancel_requested(self, deployment_id: str) -> bool:
        with self.db.session() as session:
            row = self._get_deployment_row(session, deployment_id)
            if row is None:
                raise KeyError(deployment_id)
            return bool(row.cancel_requested)

    @staticmethod
    def _lock_project(session: Session, project_id: str) -> None:
        # Alias swaps within one project are serialized on the project row.
        session.execute(
            update(ProjectEntity).where(ProjectEntity.project_id == project_id).values(name=ProjectEntity.name)
        )

    def _locked_deployment_row(self, session: Session, deployment_id: str) -> DeploymentEntity:
        project_id = session.execute(
            select(DeploymentEntity.project_id).where(DeploymentEntity.deployment_id == deployment_id)
        ).scalar_one_or_none()
        if project_id is None:
            raise KeyError(deployment_id)
        self._lock_project(session, project_id)
        return session.execute(
            select(DeploymentEntity).where(DeploymentEntity.deployment_id == deployment_id).with_for_update()
        ).scalar_one()

    @staticmethod
    def _locked_active_row(session: Session, project_id: str) -> DeploymentEntity | None:
        return session.execute(
            select(DeploymentEntity)
            .where(DeploymentEntity.project_id == project_id, DeploymentEntity.is_active.is_(True))
            .with_for_update()
        ).scalars().first()

    def finalize_deployment(self, deployment_id: str, *, promote: bool, **changes) -> dict | None:
        unknown = set(changes) - DEPLOYMENT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f'unsupported fields: {sorted(unknown)}')

        def op(session: Session) -> dict | None:
            row = self._locked_deployment_row(session, deployment_id)
            if row.status != DeploymentStatus.DEPLOYING.value:
                return None
            now = utc_now()
            demoted_id = None
            superseded_by = None
            promoted = False
            if promote:
                current = self._locked_active_row(session, row.project_id)
                if current is not None and current.seq > row.seq:
                    superseded_by = current.deployment_id
                else:
                    if current is not None:
                        current.is_active = False
                        current.updated_at = now
                        demoted_id = current.deployment_id
                    row.is_active = True
                    promoted = True
            for key, value in changes.items():
                setattr(row, key, value)
            row.status = DeploymentStatus.READY.value
            row.updated_at = now
            session.flush()
            return {
                'deployment': self._deployment_to_dict(row),
                'promoted': promoted,
                'demoted_id': demoted_id,
                'superseded_by': superseded_by,
            }

        return self._write(op, name='finalize_deployment')

    def activate_deployment(self, deployment_id: str) -> dict | None:
        def op(session: Session) -> dict | None:
            row = self._locked_deployment_row(session, deployment_id)
            if row.status != DeploymentStatus.READY.value or row.is_active or row.is_preview:
                return None
            now = utc_now()
            current = self._locked_active_row(session, row.project_id)
            demoted_id = None
            if current is not None:
                current.is_active = False
                current.updated_at = now
                demoted_id = current.deployment_id
                session.flush()
            row.is_active = True
            row.updated_at = now
            session.flush()
            return {
                'deployment': self._deployment_to_dict(row),
                'promoted': True,
                'demoted_id': demoted_id,
                'superseded_by': None,
            }

        return self._write(op, name='activate_deployment')

    def get_active_deployment(self, project_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.execute(
                select(DeploymentEntity)
                .where(DeploymentEntity.project_id == project_id, DeploymentEntity.is_active.is_(True))
            ).scalars().first()
            return self._deployment_to_dict(row) if row else None

    # events

    def append_event(self, deployment_id: str, *, event_type: str | EventType, payload: dict) -> dict:
        max_attempts = max(3, self._lock_retry_attempts())
        for attempt in range(1, max_attempts + 1):
            try:
                with self.db.session() as session:
                    deployment = self._get_deployment_row(session, deployment_id)
                    if deployment is None:
                        raise KeyError(deployment_id)
                    next_seq = int(
                        session.execute(
                            select(func.coalesce(func.max(DeploymentEventEntity.seq), 0))
                            .where(DeploymentEventEntity.deployment_id == deployment_id)
                        ).scalar_one()
                    ) + 1
                    event = DeploymentEventEntity(
                        deployment_id=deployment_id,
                        project_id=deployment.project_id,
                        seq=next_seq,
                        event_type=normalize_event_type(event_type),
                        payload_json=json.dumps(payload, ensure_ascii=True, default=str),
                        created_at=utc_now(),
                    )
                    session.add(event)
                    session.flush()
                    return self._event_to_dict(event)
            except IntegrityError:
                if attempt >= max_attempts:
                    raise
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt >= max_attempts:
                    raise
                time.sleep(self._lock_backoff_seconds(attempt))
        raise RuntimeError('append_event_retry_exhausted')

    def list_events(self, deployment_id: str, *, after_id: int = 0, limit: int = 1000) -> list[dict]:
        with self.db.session() as session:
            if self._get_deployment_row(session, deployment_id) is None:
                raise KeyError(deployment_id)
            rows = session.execute(
                select(DeploymentEventEntity)
                .where(DeploymentEventEntity.deployment_id == deployment_id, DeploymentEventEntity.id > after_id)
                .order_by(DeploymentEventEntity.id.asc())
                .limit(limit)
            ).scalars().all()
            return [self._event_to_dict(r) for r in rows]

    def list_project_events(self, project_id: str, *, after_id: int = 0, limit: int = 1000) -> list[dict]:
        with self.db.session() as session:
            if session.get(ProjectEntity, project_id) is None:
                raise KeyError(project_id)
            rows = session.execute(
                select(DeploymentEventEntity)
                .where(DeploymentEventEntity.project_id == project_id, DeploymentEventEntity.id > after_id)
                .order_by(DeploymentEventEntity.id.asc())
                .limit(limit)
            ).scalars().all()
            return [self._event_to_dict(r) for r in rows]

    # cron

    def create_cron_job(self, record: CronJobCreateRecord) -> dict:
        def op(session: Session) -> dict:
            if session.get(ProjectEntity, record.project_id) is None:
                raise KeyError(record.project_id)
            now = utc_now()
            row = CronJobEntity(
                cron_job_id=new_id('cron'),
                project_id=record.project_id,
                schedule=record.schedule,
                path=record.path,
                enabled=bool(record.enabled),
                timezone=record.timezone,
                timeout_seconds=int(record.timeout_seconds),
                retry_count=int(record.retry_count),
                next_run_at=record.next_run_at,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            return self._cron_job_to_dict(row)

        return self._write(op, name='create_cron_job')

    def get_cron_job(self, job_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(CronJobEntity, job_id)
            return self._cron_job_to_dict(row) if row else None

    def list_cron_jobs(self, *, project_id: str | None = None) -> list[dict]:
        with self.db.session() as session:
            stmt = select(CronJobEntity)
            if project_id is not None:
                stmt = stmt.where(CronJobEntity.project_id == project_id)
            rows = session.execute(stmt.order_by(CronJobEntity.created_at.asc())).scalars().all()
            return [self._cron_job_to_dict(r) for r in rows]

    def update_cron_job(self, job_id: str, **changes) -> dict:
        unknown = set(changes) - CRON_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f'unsupported fields: {sorted(unknown)}')

        def op(session: Session) -> dict:
            row = session.get(CronJobEntity, job_id)
            if row is None:
                raise KeyError(job_id)
            for key, value in changes.items():
                setattr(row, key, value)
            row.updated_at = utc_now()
            session.flush()
            return self._cron_job_to_dict(row)

        return self._write(op, name='update_cron_job')

    def delete_cron_job(self, job_id: str) -> bool:
        def op(session: Session) -> bool:
            session.execute(delete(CronExecutionEntity).where(CronExecutionEntity.cron_job_id == job_id))
            result = session.execute(delete(CronJobEntity).where(CronJobEntity.cron_job_id == job_id))
            return int(result.rowcount or 0) > 0

        return self._write(op, name='delete_cron_job')

    def list_due_cron_jobs(self, now: datetime, *, limit: int = 100) -> list[dict]:
        with self.db.session() as session:
            rows = session.execute(
                select(CronJobEntity)
                .where(
                    CronJobEntity.enabled.is_(True),
                    CronJobEntity.next_run_at.is_not(None),
                    CronJobEntity.next_run_at <= now,
                )
                .order_by(CronJobEntity.next_run_at.asc())
                .limit(limit)
            ).scalars().all()
            return [self._cron_job_to_dict(r) for r in rows]

    def claim_cron_run(self, job_id: str, *, expected_next_run_at: datetime, next_run_at: datetime | None) -> dict | None:
        def op(session: Session) -> dict | None:
            result = session.execute(
                update(CronJobEntity)
                .where(CronJobEntity.cron_job_id == job_id, CronJobEntity.next_run_at == expected_next_run_at)
                .values(next_run_at=next_run_at, updated_at=utc_now())
            )
            session.flush()
            row = session.get(CronJobEntity, job_id)
            if row is None:
                raise KeyError(job_id)
            if int(result.rowcount or 0) == 0:
                return None
            session.refresh(row)
            return self._cron_job_to_dict(row)

        return self._write(op, name='claim_cron_run')

    def create_cron_execution(self, record: CronExecutionCreateRecord) -> dict:
        def op(session: Session) -> dict:
            if session.get(CronJobEntity, record.cron_job_id) is None:
                raise KeyError(record.cron_job_id)
            row = CronExecutionEntity(
                execution_id=new_id('cexe'),
                cron_job_id=record.cron_job_id,
                attempt=int(record.attempt),
                trigger=record.trigger,
                external_trigger_id=record.external_trigger_id,
                status=CronExecutionStatus.RUNNING.value,
                started_at=utc_now(),
                output='',
            )
            session.add(row)
            session.flush()
            return self._execution_to_dict(row)

        return self._write(op, name='create_cron_execution')

    def finish_cron_execution(
        self,
        execution_id: str,
        *,
        status: str,
        output: str,
        error_text: str | None,
        duration_ms: int,
    ) -> dict:
        def op(session: Session) -> dict:
            row = session.get(CronExecutionEntity, execution_id)
            if row is None:
                raise KeyError(execution_id)
            row.status = status
            row.output = output
            row.error_text = error_text
            row.duration_ms = int(duration_ms)
            row.finished_at = utc_now()
            session.flush()
            return self._execution_to_dict(row)

        return self._write(op, name='finish_cron_execution')

    def list_cron_executions(self, job_id: str, *, limit: int = 50) -> list[dict]:
        with self.db.session() as session:
            if session.get(CronJobEntity, job_id) is None:
                raise KeyError(job_id)
            rows = session.execute(
                select(CronExecutionEntity)
                .where(CronExecutionEntity.cron_job_id == job_id)
                .order_by(CronExecutionEntity.started_at.desc())
                .limit(limit)
            ).scalars().all()
            return [self._execution_to_dict(r) for r in rows]

    def find_cron_executions_by_trigger(self, job_id: str, external_trigger_id: str) -> list[dict]:
        with self.db.session() as session:
            rows = session.execute(
                select(CronExecutionEntity).where(
                    CronExecutionEntity.cron_job_id == job_id,
                    CronExecutionEntity.external_trigger_id == external_trigger_id,
                )
            ).scalars().all()
            return [self._execution_to_dict(r) for r in rows]

    # row mapping

    @staticmethod
    def _project_to_dict(row: ProjectEntity) -> dict:
        overrides = json.loads(row.build_overrides_json or '{}')
        return {
            'project_id': row.project_id,
            'name': row.name,
            'slug': row.slug,
            'repo_url': row.repo_url,
            'production_branch': row.production_branch,
            'owner_id': row.owner_id,
            'member_ids': list(json.loads(row.member_ids_json or '[]')),
            'env_vars': dict(json.loads(row.env_vars_json or '{}')),
            'install_command': overrides.get('install_command'),
            'build_command': overrides.get('build_command'),
            'output_directory': overrides.get('output_directory'),
            'framework': overrides.get('framework'),
            'webhook_secrets': dict(json.loads(row.webhook_secrets_json or '{}')),
            'tier': row.tier,
            'created_at': iso_utc(row.created_at),
        }

    @staticmethod
    def _deployment_to_dict(row: DeploymentEntity) -> dict:
        return {
            'deployment_id': row.deployment_id,
            'seq': row.seq,
            'project_id': row.project_id,
            'status': row.status,
            'branch': row.branch,
            'commit_sha': row.commit_sha,
            'commit_message': row.commit_message,
            'is_preview': bool(row.is_preview),
            'pr_number': row.pr_number,
            'trigger': row.trigger,
            'idempotency_key': row.idempotency_key,
            'queued_at': iso_utc(row.queued_at),
            'started_at': iso_utc(row.started_at),
            'ready_at': iso_utc(row.ready_at),
            'build_duration_ms': row.build_duration_ms,
            'artifact_location': row.artifact_location,
            'is_active': bool(row.is_active),
            'error_reason': row.error_reason,
            'error_kind': row.error_kind,
            'log_tail': row.log_tail,
            'framework': row.framework,
            'cancel_requested': bool(row.cancel_requested),
            'updated_at': iso_utc(row.updated_at),
        }

    @staticmethod
    def _event_to_dict(row: DeploymentEventEntity) -> dict:
        return {
            'id': row.id,
            'deployment_id': row.deployment_id,
            'project_id': row.project_id,
            'seq': row.seq,
            'type': row.event_type,
            'payload': json.loads(row.payload_json),
            'created_at': iso_utc(row.created_at),
        }

    @staticmethod
    def _cron_job_to_dict(row: CronJobEntity) -> dict:
        return {
            'cron_job_id': row.cron_job_id,
            'project_id': row.project_id,
            'schedule': row.schedule,
            'path': row.path,
            'enabled': bool(row.enabled),
            'timezone': row.timezone,
            'timeout_seconds': row.timeout_seconds,
            'retry_count': row.retry_count,
            'next_run_at': iso_utc(row.next_run_at),
            'last_run_at': iso_utc(row.last_run_at),
            'last_status': row.last_status,
            'created_at': iso_utc(row.created_at),
            'updated_at': iso_utc(row.updated_at),
        }

    @staticmethod
    def _execution_to_dict(row: CronExecutionEntity) -> dict:
        return {
            'execution_id': row.execution_id,
            'cron_job_id': row.cron_job_id,
            'attempt': row.attempt,
            'trigger': row.trigger,
            'external_trigger_id': row.external_trigger_id,
            'status': row.status,
            'started_at': iso_utc(row.started_at),
            'finished_at': iso_utc(row.finished_at),
            'duration_ms': row.duration_ms,
            'output': row.output or '',
            'error_text': row.error_text,
        }
