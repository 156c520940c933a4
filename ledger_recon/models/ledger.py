"""
Core Ledger Models

These models define the strict schemas for every entity the engine caches
and every payload it exchanges with the remote ledger service.
They are designed to:
1. Enforce invariants at construction, not at read time
2. Be immutable, so cache snapshots can never be mutated behind our back
3. Round-trip cleanly to and from the service's JSON

DESIGN DECISION: A transaction's budget/goal reference is a tagged variant
(`BudgetLink` | `GoalLink`) rather than two loose optional ids. The wire
format still uses `budget_id` / `saving_goal_id`; they are lifted into the
variant on parse and a payload carrying both is rejected.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, NamedTuple, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    model_validator,
)


ZERO = Decimal("0")


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class TransactionType(str, Enum):
    """Direction of money relative to the general balance."""
    INCOME = "income"
    EXPENSE = "expense"


class GoalStatus(str, Enum):
    """
    Savings goal status.

    COMPLETED is derived: it holds exactly when current >= target.
    """
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BudgetStatus(str, Enum):
    """Budget status, always derived from spend, allocation and dates."""
    ACTIVE = "active"
    NEAR_LIMIT = "near_limit"
    OVERSPENT = "overspent"
    EXPIRED = "expired"
    COMPLETED = "completed"


class CollectionType(str, Enum):
    """Entity collections held by the cache."""
    TRANSACTIONS = "transactions"
    BUDGETS = "budgets"
    SAVINGS_GOALS = "savings_goals"


class LinkKind(str, Enum):
    """Discriminant of a transaction's reference."""
    BUDGET = "budget"
    GOAL = "goal"


class Direction(str, Enum):
    """Contribution moves money into a goal, withdrawal moves it back out."""
    CONTRIBUTE = "contribute"
    WITHDRAW = "withdraw"


class DeletionMode(str, Enum):
    """
    How linked transactions are treated when their budget/goal is deleted.

    DETACH keeps the transactions in history without the reference.
    CASCADE_REFUND deletes them, returning their effect to the net balance.
    """
    DETACH = "detach"
    CASCADE_REFUND = "cascade_refund"


class EntityKey(NamedTuple):
    """Identity of a cached entity. Tuples sort, which gives a lock order."""
    collection: CollectionType
    id: int


# =============================================================================
# TRANSACTION
# =============================================================================

class BudgetLink(BaseModel):
    """Reference from a transaction to a budget."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["budget"] = "budget"
    budget_id: int


class GoalLink(BaseModel):
    """Reference from a transaction to a savings goal."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["goal"] = "goal"
    goal_id: int


TransactionLink = Annotated[
    Union[BudgetLink, GoalLink],
    Field(discriminator="kind"),
]


def _lift_references(data: Any) -> Any:
    """Turn wire-level budget_id/saving_goal_id into a `link` variant."""
    if not isinstance(data, dict):
        return data
    if "budget_id" not in data and "saving_goal_id" not in data:
        return data

    data = dict(data)
    budget_id = data.pop("budget_id", None)
    goal_id = data.pop("saving_goal_id", None)

    if budget_id is not None and goal_id is not None:
        raise ValueError(
            "A transaction can reference a budget or a savings goal, not both"
        )
    if data.get("link") is None:
        if budget_id is not None:
            data["link"] = {"kind": LinkKind.BUDGET.value, "budget_id": budget_id}
        elif goal_id is not None:
            data["link"] = {"kind": LinkKind.GOAL.value, "goal_id": goal_id}
    return data


class Transaction(BaseModel):
    """
    A single ledger transaction.

    Immutable once created: edits produce a new instance through
    `model_copy`. Provisional transactions (created speculatively before
    the server confirms) carry negative ids.
    """
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="ignore")

    id: int
    amount: Annotated[Decimal, Field(gt=0, decimal_places=2)]
    type: TransactionType
    date: date
    name: str = Field(default="", max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    category_id: Optional[int] = None
    link: Optional[TransactionLink] = None
    created_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def lift_wire_references(cls, data: Any) -> Any:
        return _lift_references(data)

    @property
    def link_kind(self) -> Optional[LinkKind]:
        return LinkKind(self.link.kind) if self.link else None

    @property
    def budget_id(self) -> Optional[int]:
        return self.link.budget_id if isinstance(self.link, BudgetLink) else None

    @property
    def saving_goal_id(self) -> Optional[int]:
        return self.link.goal_id if isinstance(self.link, GoalLink) else None

    @property
    def is_provisional(self) -> bool:
        return self.id < 0

    @property
    def is_contribution(self) -> bool:
        """Goal-linked expense: money leaves the general balance into a goal."""
        return self.saving_goal_id is not None and self.type == TransactionType.EXPENSE

    @property
    def is_withdrawal(self) -> bool:
        """Goal-linked income: money returns from a goal to the general balance."""
        return self.saving_goal_id is not None and self.type == TransactionType.INCOME

    @property
    def signed_amount(self) -> Decimal:
        """Effect on net balance: income adds, expense subtracts."""
        return self.amount if self.type == TransactionType.INCOME else -self.amount

    @property
    def goal_delta(self) -> Decimal:
        """Effect on the linked goal's balance."""
        if self.is_contribution:
            return self.amount
        if self.is_withdrawal:
            return -self.amount
        return ZERO

    def detached(self) -> "Transaction":
        """Copy of this transaction without its budget/goal reference."""
        return self.model_copy(update={"link": None})

    def to_payload(self) -> dict:
        """Serialize in the service's flat wire format."""
        return {
            "id": self.id,
            "amount": str(self.amount),
            "type": self.type.value,
            "date": self.date.isoformat(),
            "name": self.name,
            "description": self.description,
            "category_id": self.category_id,
            "budget_id": self.budget_id,
            "saving_goal_id": self.saving_goal_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class TransactionCreate(BaseModel):
    """
    Payload for creating a transaction.

    This is the contract CSV import and the orchestrators both produce.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    amount: Annotated[Decimal, Field(gt=0, decimal_places=2)]
    type: TransactionType
    date: date
    name: str = Field(default="", max_length=200)
    description: str = Field(default="", max_length=1000)
    category_id: Optional[int] = None
    budget_id: Optional[int] = None
    saving_goal_id: Optional[int] = None

    @model_validator(mode='after')
    def validate_single_reference(self) -> 'TransactionCreate':
        """A transaction belongs to a budget or a goal, never both."""
        if self.budget_id is not None and self.saving_goal_id is not None:
            raise ValueError(
                "A transaction can reference a budget or a savings goal, not both"
            )
        return self

    def to_wire(self) -> dict:
        """JSON-ready body for the create endpoint."""
        return self.model_dump(mode="json")

    def provisional(self, provisional_id: int, created_at: datetime) -> Transaction:
        """Build the speculative cache entity shown while the create is in flight."""
        return Transaction(
            id=provisional_id,
            amount=self.amount,
            type=self.type,
            date=self.date,
            name=self.name,
            description=self.description,
            category_id=self.category_id,
            budget_id=self.budget_id,
            saving_goal_id=self.saving_goal_id,
            created_at=created_at,
        )


# =============================================================================
# BUDGET
# =============================================================================

class Budget(BaseModel):
    """
    A spending allocation for a category over a date window.

    `spent` and status are never stored; see
    `ledger_recon.queries.aggregations.budget_usage`.
    """
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="ignore")

    id: int
    name: str = Field(..., min_length=1, max_length=200)
    amount: Annotated[Decimal, Field(ge=0, decimal_places=2)]
    category_id: Optional[int] = None
    start_date: date
    end_date: date
    created_at: Optional[datetime] = None

    @model_validator(mode='after')
    def validate_window(self) -> 'Budget':
        """Validate date relationships."""
        if self.end_date < self.start_date:
            raise ValueError("Budget end date cannot be before start date")
        return self

    def covers(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date


# =============================================================================
# SAVINGS GOAL
# =============================================================================

class SavingsGoal(BaseModel):
    """
    A savings goal tracking progress toward a target.

    INVARIANT (settled state): current_amount equals the signed sum of the
    goal's linked transactions, and status is COMPLETED exactly when
    current_amount >= target_amount.
    """
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="ignore")

    id: int
    name: str = Field(..., min_length=1, max_length=200)
    target_amount: Annotated[Decimal, Field(gt=0, decimal_places=2)]
    current_amount: Annotated[Decimal, Field(ge=0, decimal_places=2)] = ZERO
    description: Optional[str] = Field(default=None, max_length=1000)
    status: GoalStatus = GoalStatus.ACTIVE
    created_at: Optional[datetime] = None

    @property
    def is_completed(self) -> bool:
        return self.current_amount >= self.target_amount

    @property
    def is_cancelled(self) -> bool:
        return self.status == GoalStatus.CANCELLED

    def with_balance(self, new_amount: Decimal) -> "SavingsGoal":
        """
        Copy with a new balance and the status that balance implies.

        Cancelled goals keep their status.
        """
        new_amount = max(ZERO, new_amount)
        if self.is_cancelled:
            status = GoalStatus.CANCELLED
        elif new_amount >= self.target_amount:
            status = GoalStatus.COMPLETED
        else:
            status = GoalStatus.ACTIVE
        return self.model_copy(update={"current_amount": new_amount, "status": status})


class SavingsGoalCreate(BaseModel):
    """Payload for creating a savings goal. Balances start at zero."""
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=200)
    target_amount: Annotated[Decimal, Field(gt=0, decimal_places=2)]
    description: str = Field(default="", max_length=1000)

    def to_wire(self) -> dict:
        return {**self.model_dump(mode="json"), "current_amount": "0.00"}


LedgerEntity = Union[Transaction, Budget, SavingsGoal]

_COLLECTIONS: dict[type, CollectionType] = {
    Transaction: CollectionType.TRANSACTIONS,
    Budget: CollectionType.BUDGETS,
    SavingsGoal: CollectionType.SAVINGS_GOALS,
}


def collection_of(entity: LedgerEntity) -> CollectionType:
    """Collection an entity instance belongs to."""
    try:
        return _COLLECTIONS[type(entity)]
    except KeyError:
        raise TypeError(f"Not a ledger entity: {type(entity).__name__}")


def key_of(entity: LedgerEntity) -> EntityKey:
    return EntityKey(collection_of(entity), entity.id)


# =============================================================================
# REMOTE SERVICE RESULTS
# =============================================================================

class TransactionFilter(BaseModel):
    """Query parameters for listing transactions."""

    saving_goal_id: Optional[int] = None
    budget_id: Optional[int] = None
    type: Optional[TransactionType] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    page: int = Field(default=1, ge=1)
    per_page: Optional[int] = Field(default=None, ge=1)
    all: bool = False

    def to_params(self) -> dict[str, str]:
        params = {}
        if self.saving_goal_id is not None:
            params["saving_goal_id"] = str(self.saving_goal_id)
        if self.budget_id is not None:
            params["budget_id"] = str(self.budget_id)
        if self.type is not None:
            params["type"] = self.type.value
        if self.date_from is not None:
            params["start_date"] = self.date_from.isoformat()
        if self.date_to is not None:
            params["end_date"] = self.date_to.isoformat()
        if self.all:
            params["all"] = "true"
        else:
            params["page"] = str(self.page)
            if self.per_page is not None:
                params["per_page"] = str(self.per_page)
        return params

    def matches(self, transaction: Transaction) -> bool:
        """Client-side equivalent of the server filter."""
        if self.saving_goal_id is not None and transaction.saving_goal_id != self.saving_goal_id:
            return False
        if self.budget_id is not None and transaction.budget_id != self.budget_id:
            return False
        if self.type is not None and transaction.type != self.type:
            return False
        if self.date_from is not None and transaction.date < self.date_from:
            return False
        if self.date_to is not None and transaction.date > self.date_to:
            return False
        return True


class PageMeta(BaseModel):
    """Pagination metadata returned with transaction listings."""
    model_config = ConfigDict(extra="ignore")

    current_page: int = 1
    last_page: int = 1
    per_page: Optional[int] = None
    total: Optional[int] = None


class TransactionPage(BaseModel):
    """One page of a transaction listing."""

    data: list[Transaction] = Field(default_factory=list)
    meta: PageMeta = Field(default_factory=PageMeta)

    @property
    def has_more(self) -> bool:
        return self.meta.current_page < self.meta.last_page


class TransactionReceipt(BaseModel):
    """
    Result of creating a transaction.

    `goal_deleted` is set when the service removed the linked goal as a
    side effect (a withdrawal that emptied it).
    """

    transaction: Transaction
    goal_deleted: bool = False


class DeleteResult(BaseModel):
    deleted: bool = True


class BudgetDeleteResult(DeleteResult):
    transaction_count: int = Field(default=0, ge=0)


# =============================================================================
# ENGINE RESULTS
# =============================================================================

class ContributionResult(BaseModel):
    """Outcome of a settled contribution or withdrawal."""

    direction: Direction
    transaction: Transaction
    goal: Optional[SavingsGoal] = Field(
        default=None,
        description="Goal as cached after settlement; None when the service removed it"
    )
    goal_deleted: bool = False
    close_goal_detail: bool = Field(
        default=False,
        description="The caller should close any open goal-detail view"
    )


class DeletionResult(BaseModel):
    """Outcome of a settled deletion."""

    mode: Optional[DeletionMode] = None
    entity_kind: CollectionType
    entity_id: int
    removed_transaction_ids: list[int] = Field(default_factory=list)
    detached_transaction_ids: list[int] = Field(default_factory=list)
    refunded_amount: Decimal = Field(
        default=ZERO,
        description="How much the net balance rises once the removal is reflected"
    )
    goal: Optional[SavingsGoal] = None


class ImportFailure(BaseModel):
    index: int = Field(ge=0)
    error: str


class ImportReport(BaseModel):
    """Result of submitting a batch of imported records one by one."""

    created: list[Transaction] = Field(default_factory=list)
    failures: list[ImportFailure] = Field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.created)

    @property
    def failed_count(self) -> int:
        return len(self.failures)
