"""
Employee directory backed by Snowflake, with circuit breaker protection.
Falls back to the mock directory when Snowflake is unconfigured or failing.
"""

import asyncio
import logging
from datetime import date
from typing import Any

import pandas as pd
from snowflake.snowpark import Session
from snowflake.snowpark.exceptions import SnowparkSQLException
from snowflake.snowpark.functions import col

from approvalflow.circuit_breaker import CircuitBreaker
from approvalflow.config import settings
from approvalflow.models import Identity, Tier
from data.company_records import get_employee_data

logger = logging.getLogger(__name__)

EMPLOYEE_TABLE = "employees"
EMPLOYEE_COLUMNS = ("employee_id", "name", "email", "department", "level", "manager_id", "hire_date")


def identity_from_record(record: dict[str, Any]) -> Identity:
    """Build an Identity from a directory row (Snowflake or mock)."""
    row = {k.lower(): (None if pd.isna(v) else v) for k, v in record.items()}
    hire_date = row.get("hire_date")
    if isinstance(hire_date, str):
        hire_date = date.fromisoformat(hire_date)
    elif isinstance(hire_date, pd.Timestamp):
        hire_date = hire_date.date()
    return Identity(
        id=str(row["employee_id"]),
        display_name=row.get("name") or str(row["employee_id"]),
        tier=Tier(str(row.get("level") or "junior").lower()),
        manager_id=row.get("manager_id"),
        hire_date=hire_date,
        department=row.get("department"),
        email=row.get("email"),
    )


class EmployeeDirectory:
    """
    Resolves employee ids to identities.

    Snowflake is queried only when ``use_mock`` is False and a session could be
    opened; every query goes through the circuit breaker and any failure falls
    back to the records in ``data/company_records.py``.
    """

    def __init__(self, use_mock: bool = True):
        self.use_mock = use_mock
        self.session: Session | None = None
        self.circuit_breaker = CircuitBreaker(
            name="EmployeeDirectory",
            failure_threshold=settings.circuit_breaker_failure_threshold,
            timeout=settings.circuit_breaker_timeout,
        )
        if not use_mock:
            self.session = self._open_session()
            self.use_mock = self.session is None

    @staticmethod
    def _open_session() -> Session | None:
        params = {
            key: getattr(settings, f"snowflake_{key}")
            for key in ("account", "user", "password", "warehouse", "database", "schema")
        }
        try:
            session = Session.builder.configs(params).create()
        except Exception as e:
            logger.error(f"Snowflake connection to {params['account']} failed, using mock directory: {e}")
            return None
        logger.info(f"Snowflake directory connected ({params['database']}.{params['schema']})")
        return session

    def get_identity(self, employee_id: str) -> Identity | None:
        if self.use_mock:
            return self._mock_identity(employee_id)
        try:
            return self.circuit_breaker.call(self._fetch_identity, employee_id)
        except Exception as e:
            logger.warning(f"Directory lookup for {employee_id} failed, using mock record: {e}")
            return self._mock_identity(employee_id)

    async def lookup(self, employee_id: str) -> Identity | None:
        """Async wrapper; Snowpark calls block, so they run in a worker thread."""
        return await asyncio.to_thread(self.get_identity, employee_id)

    @staticmethod
    def _mock_identity(employee_id: str) -> Identity | None:
        record = get_employee_data(employee_id)
        return identity_from_record(record) if record else None

    def _fetch_identity(self, employee_id: str) -> Identity | None:
        """DataFrame API query; no SQL strings are built from input."""
        if self.session is None:
            raise RuntimeError("no Snowflake session")

        try:
            rows = (
                self.session.table(EMPLOYEE_TABLE)
                .select(*EMPLOYEE_COLUMNS)
                .where(col("employee_id") == employee_id)
                .limit(1)
                .to_pandas()
            )
        except SnowparkSQLException as e:
            logger.error(f"Query on {EMPLOYEE_TABLE} failed: {e}")
            raise

        if rows.empty:
            logger.warning(f"{employee_id} is not in {EMPLOYEE_TABLE}")
            return None
        return identity_from_record(rows.iloc[0].to_dict())

    def get_circuit_breaker_state(self) -> dict:
        return self.circuit_breaker.get_state()

    def close(self):
        if self.session is not None:
            self.session.close()
            self.session = None
            logger.info("Snowflake directory session closed")
