"""
HTTP Ledger Service

Talks to the ledger REST API with httpx.

The service speaks Laravel-style JSON:
- resources are wrapped as {"data": {...}}
- listings are {"data": [...], "meta": {"current_page", "last_page", ...}}
- `all=true` skips pagination on listings
- errors carry {"message": "..."}

DESIGN DECISION: No retries and no default timeout. A failed call raises
once and the engine rolls back; retrying is the caller's decision.
"""

from typing import Any, Optional, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from ledger_recon.config import LedgerServiceSettings, get_settings
from ledger_recon.models.ledger import (
    Budget,
    BudgetDeleteResult,
    DeleteResult,
    PageMeta,
    SavingsGoal,
    SavingsGoalCreate,
    Transaction,
    TransactionCreate,
    TransactionFilter,
    TransactionPage,
    TransactionReceipt,
)
from ledger_recon.services.ledger.interface import (
    ConnectionError,
    LedgerServiceInterface,
    NotFoundError,
    RemoteError,
)


logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class HttpLedgerService(LedgerServiceInterface):
    """
    REST implementation of the ledger service contract.

    Either pass a ready `httpx.AsyncClient` (tests hand one built on
    `httpx.MockTransport`) or let the service build one from settings.
    """

    def __init__(
        self,
        settings: Optional[LedgerServiceSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings or get_settings().ledger_service
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self._settings.base_url,
            headers=self._headers(),
            timeout=self._settings.timeout_seconds,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._settings.api_token:
            headers["Authorization"] = f"Bearer {self._settings.api_token}"
        return headers

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> Any:
        """Send one request and return the decoded body, mapping failures."""
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.error("ledger_transport_failed", operation=operation, error=str(e))
            raise ConnectionError(
                f"Could not reach ledger service: {e}", operation=operation
            )

        if response.status_code == 404:
            raise NotFoundError(
                self._error_message(response, f"{operation}: not found"),
                operation=operation,
            )
        if response.is_error:
            logger.warning(
                "ledger_request_failed",
                operation=operation,
                status_code=response.status_code,
            )
            raise RemoteError(
                self._error_message(response, f"{operation} failed"),
                status_code=response.status_code,
                operation=operation,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise RemoteError(
                f"{operation}: response is not JSON",
                status_code=response.status_code,
                operation=operation,
            )

    @staticmethod
    def _error_message(response: httpx.Response, default: str) -> str:
        try:
            body = response.json()
        except ValueError:
            return default
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return default

    @staticmethod
    def _unwrap(body: Any) -> Any:
        """Strip the {"data": ...} envelope if present."""
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    @staticmethod
    def _parse(model: type[ModelT], data: Any, operation: str) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise RemoteError(
                f"{operation}: malformed {model.__name__} payload: {e}",
                operation=operation,
            )

    def _parse_list(self, model: type[ModelT], data: Any, operation: str) -> list[ModelT]:
        if not isinstance(data, list):
            raise RemoteError(
                f"{operation}: expected a list of {model.__name__}",
                operation=operation,
            )
        return [self._parse(model, item, operation) for item in data]

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    async def list_transactions(
        self,
        filter: Optional[TransactionFilter] = None,
    ) -> TransactionPage:
        filter = filter or TransactionFilter(per_page=self._settings.page_size)
        body = await self._request(
            "list_transactions", "GET", "/transactions", params=filter.to_params()
        )
        data = self._parse_list(Transaction, self._unwrap(body), "list_transactions")
        meta_raw = body.get("meta") if isinstance(body, dict) else None
        meta = (
            self._parse(PageMeta, meta_raw, "list_transactions")
            if meta_raw
            else PageMeta()
        )
        return TransactionPage(data=data, meta=meta)

    async def list_all_transactions(
        self,
        filter: Optional[TransactionFilter] = None,
    ) -> list[Transaction]:
        base = filter or TransactionFilter()
        if base.all:
            return (await self.list_transactions(base)).data
        if base.per_page is None:
            base = base.model_copy(update={"per_page": self._settings.page_size})
        return await super().list_all_transactions(base)

    async def create_transaction(
        self,
        payload: TransactionCreate,
    ) -> TransactionReceipt:
        body = await self._request(
            "create_transaction",
            "POST",
            "/transactions",
            json=payload.model_dump(mode="json", exclude_none=True),
        )
        transaction = self._parse(Transaction, self._unwrap(body), "create_transaction")
        goal_deleted = False
        if isinstance(body, dict):
            goal_deleted = bool(body.get("goal_deleted") or body.get("deleted"))
        return TransactionReceipt(transaction=transaction, goal_deleted=goal_deleted)

    async def update_transaction(
        self,
        transaction_id: int,
        patch: dict,
    ) -> Transaction:
        body = await self._request(
            "update_transaction", "PUT", f"/transactions/{transaction_id}", json=patch
        )
        return self._parse(Transaction, self._unwrap(body), "update_transaction")

    async def delete_transaction(self, transaction_id: int) -> DeleteResult:
        body = await self._request(
            "delete_transaction", "DELETE", f"/transactions/{transaction_id}"
        )
        return DeleteResult(deleted=self._deleted_flag(body))

    # -------------------------------------------------------------------------
    # Savings goals
    # -------------------------------------------------------------------------

    async def list_savings_goals(self) -> list[SavingsGoal]:
        body = await self._request(
            "list_savings_goals", "GET", "/savings", params={"all": "true"}
        )
        return self._parse_list(SavingsGoal, self._unwrap(body), "list_savings_goals")

    async def create_savings_goal(self, payload: SavingsGoalCreate) -> SavingsGoal:
        body = await self._request(
            "create_savings_goal", "POST", "/savings", json=payload.to_wire()
        )
        return self._parse(SavingsGoal, self._unwrap(body), "create_savings_goal")

    async def update_savings_goal(self, goal_id: int, patch: dict) -> SavingsGoal:
        body = await self._request(
            "update_savings_goal", "PUT", f"/savings/{goal_id}", json=patch
        )
        return self._parse(SavingsGoal, self._unwrap(body), "update_savings_goal")

    async def delete_savings_goal(self, goal_id: int) -> DeleteResult:
        body = await self._request(
            "delete_savings_goal", "DELETE", f"/savings/{goal_id}"
        )
        return DeleteResult(deleted=self._deleted_flag(body))

    # -------------------------------------------------------------------------
    # Budgets
    # -------------------------------------------------------------------------

    async def list_budgets(self) -> list[Budget]:
        body = await self._request(
            "list_budgets", "GET", "/budgets", params={"all": "true"}
        )
        return self._parse_list(Budget, self._unwrap(body), "list_budgets")

    async def delete_budget(self, budget_id: int) -> BudgetDeleteResult:
        body = await self._request(
            "delete_budget", "DELETE", f"/budgets/{budget_id}"
        )
        count = body.get("transaction_count", 0) if isinstance(body, dict) else 0
        return BudgetDeleteResult(
            deleted=self._deleted_flag(body),
            transaction_count=count or 0,
        )

    @staticmethod
    def _deleted_flag(body: Any) -> bool:
        if isinstance(body, dict) and "deleted" in body:
            return bool(body["deleted"])
        return True

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
