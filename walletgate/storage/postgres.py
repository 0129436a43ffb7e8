from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from walletgate.logging import get_logger
from walletgate.storage.errors import ConstraintViolation
from walletgate.storage.models import Session, User, UserRole, UserStatus



def _naive_utc(value: Optional[datetime]) -> datetime:
    """TIMESTAMPTZ columns come back aware; models carry naive UTC."""
    if value is None:
        return datetime.utcnow()
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _as_uuid(value: Any) -> Optional[str]:
    """Canonical UUID text, or None for ids the uuid columns would reject."""
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError, AttributeError):
        return None


class PostgresStore:
    """Postgres-backed account and session store."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the account tables exist before serving requests."""

        required_tables = ["app_user", "user_auth_credential", "auth_session"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    @staticmethod
    def _user_from_row(row: dict) -> User:
        meta = row.get("meta")
        if isinstance(meta, str):
            try:
                meta = json.loads(meta)
            except ValueError:
                meta = None
        return User(
            id=str(row["id"]),
            username=row["username"],
            display_name=row.get("display_name"),
            role=row.get("role", UserRole.USER.value),
            status=row.get("status", UserStatus.ENABLED.value),
            wallet_address=row.get("wallet_address"),
            created_at=_naive_utc(row.get("created_at")),
            meta=meta,
        )

    # users
    def create_user(
        self,
        username: str,
        *,
        display_name: Optional[str] = None,
        role: str = UserRole.USER.value,
        status: str = UserStatus.ENABLED.value,
        wallet_address: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized_wallet = wallet_address.lower() if wallet_address else None
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, display_name, role, status, wallet_address, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        username,
                        display_name or username,
                        role,
                        status,
                        normalized_wallet,
                        json.dumps(meta) if meta else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "wallet_address" if "wallet" in str(exc) else "username"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        key = _as_uuid(user_id)
        if key is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (key,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_wallet(self, address: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE wallet_address = %s ORDER BY created_at LIMIT 1",
                (address.lower(),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_root_user(self) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE role = %s AND status <> %s ORDER BY created_at LIMIT 1",
                (UserRole.ROOT.value, UserStatus.DELETED.value),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def is_username_taken(self, username: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS taken FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return row is not None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def _update_user(self, sql: str, params: tuple[Any, ...]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._user_from_row(row) if row else None

    def set_wallet_address(self, user_id: str, address: str) -> User:
        try:
            user = self._update_user(
                "UPDATE app_user SET wallet_address = %s, updated_at = now() WHERE id = %s RETURNING *",
                (address.lower(), user_id),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "wallet address already bound", {"field": "wallet_address"}
            )
        if not user:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return user

    def clear_wallet_address(self, user_id: str) -> Optional[User]:
        return self._update_user(
            "UPDATE app_user SET wallet_address = NULL, updated_at = now() WHERE id = %s RETURNING *",
            (user_id,),
        )

    def update_user_status(self, user_id: str, status: str) -> Optional[User]:
        return self._update_user(
            "UPDATE app_user SET status = %s, updated_at = now() WHERE id = %s RETURNING *",
            (UserStatus(status).value, user_id),
        )

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(
            "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
            (UserRole(role).value, user_id),
        )

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Optional[dict] = None,
    ) -> Session:
        sess = Session.new(
            user_id=user_id,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at, user_agent, ip_addr, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.created_at.replace(tzinfo=timezone.utc),
                        sess.expires_at.replace(tzinfo=timezone.utc),
                        user_agent,
                        ip_addr,
                        json.dumps(meta) if meta else None,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        key = _as_uuid(session_id)
        if key is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (key,)
            ).fetchone()
        if not row:
            return None
        meta = row.get("meta")
        if isinstance(meta, str):
            try:
                meta = json.loads(meta)
            except ValueError:
                meta = None
        raw_ip = row.get("ip_addr")
        sess = Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=_naive_utc(row.get("created_at")),
            expires_at=_naive_utc(row.get("expires_at")),
            user_agent=row.get("user_agent"),
            ip_addr=str(raw_ip) if raw_ip is not None else None,
            meta=meta,
        )
        return sess

    def revoke_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))

    def revoke_user_sessions(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
