"""
Document lifecycle workflows.

State machines for invoices, purchase documents and credit notes.  The
orchestrator looks every requested transition up here before it runs any
side effect; an undeclared transition is an InvalidTransitionError.
"""

from dataclasses import dataclass

from docledger_kernel.exceptions import InvalidTransitionError
from docledger_kernel.logging_config import get_logger

logger = get_logger("services.workflows")


@dataclass(frozen=True)
class Guard:
    """A condition for a transition."""
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid state transition."""
    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None
    moves_stock: bool = False
    posts_movement: bool = False


@dataclass(frozen=True)
class Workflow:
    """A state machine definition."""
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def find(self, from_state: str, to_state: str) -> Transition | None:
        for transition in self.transitions:
            if transition.from_state == from_state and transition.to_state == to_state:
                return transition
        return None

    def targets(self, from_state: str) -> tuple[str, ...]:
        return tuple(t.to_state for t in self.transitions if t.from_state == from_state)

    def require(self, entity_type: str, entity_id, from_state: str, to_state: str) -> Transition:
        """
        Return the declared transition or raise InvalidTransitionError.
        """
        transition = self.find(from_state, to_state)
        if transition is None:
            logger.warning(
                "invalid_transition_rejected",
                extra={
                    "workflow_name": self.name,
                    "entity_type": entity_type,
                    "entity_id": str(entity_id),
                    "from_state": from_state,
                    "to_state": to_state,
                },
            )
            raise InvalidTransitionError(entity_type, str(entity_id), from_state, to_state)
        return transition


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

HAS_LINES = Guard(
    name="has_lines",
    description="Document has at least one line",
)

NO_SETTLEMENT = Guard(
    name="no_settlement",
    description="No payment recorded and no credit issued or applied",
)

FULLY_CREDITED = Guard(
    name="fully_credited",
    description="Credit issued on the invoice equals its total_ttc",
)

NOTHING_CONSUMED = Guard(
    name="nothing_consumed",
    description="Credit note has no used and no blocked amount",
)


# -----------------------------------------------------------------------------
# Invoice Workflow
# -----------------------------------------------------------------------------

INVOICE_WORKFLOW = Workflow(
    name="invoice",
    description="Customer invoice lifecycle",
    initial_state="created",
    states=(
        "created",
        "draft",
        "validated",
        "cancelled",
        "product_return_total",
    ),
    transitions=(
        Transition("created", "draft", action="save_draft"),
        Transition("created", "validated", action="validate", guard=HAS_LINES,
                   moves_stock=True, posts_movement=True),
        Transition("draft", "validated", action="validate", guard=HAS_LINES,
                   moves_stock=True, posts_movement=True),
        Transition("validated", "cancelled", action="cancel", guard=NO_SETTLEMENT,
                   moves_stock=True, posts_movement=True),
        Transition("validated", "product_return_total", action="mark_returned",
                   guard=FULLY_CREDITED),
    ),
    terminal_states=("cancelled",),
)


# -----------------------------------------------------------------------------
# Purchase Document Workflow
# -----------------------------------------------------------------------------

PURCHASE_WORKFLOW = Workflow(
    name="purchase_document",
    description="Supplier purchase document lifecycle",
    initial_state="pending",
    states=("pending", "validated", "cancelled"),
    transitions=(
        Transition("pending", "validated", action="validate", guard=HAS_LINES, moves_stock=True),
        Transition("validated", "cancelled", action="cancel", guard=NO_SETTLEMENT, moves_stock=True),
    ),
    terminal_states=("cancelled",),
)


# -----------------------------------------------------------------------------
# Credit Note Workflow
# -----------------------------------------------------------------------------

CREDIT_NOTE_WORKFLOW = Workflow(
    name="credit_note",
    description="Customer and supplier credit note lifecycle",
    initial_state="draft",
    states=(
        "draft",
        "validated",
        "blocked",
        "unblocked",
        "partially_applied",
        "settled",
        "cancelled",
    ),
    transitions=(
        Transition("draft", "validated", action="validate"),
        Transition("draft", "cancelled", action="cancel", guard=NOTHING_CONSUMED),
        Transition("validated", "cancelled", action="cancel", guard=NOTHING_CONSUMED),
        Transition("validated", "blocked", action="block"),
        Transition("unblocked", "blocked", action="block"),
        Transition("partially_applied", "blocked", action="block"),
        Transition("blocked", "blocked", action="block"),
        Transition("blocked", "unblocked", action="unblock"),
        Transition("blocked", "partially_applied", action="unblock"),
        Transition("validated", "partially_applied", action="apply"),
        Transition("validated", "settled", action="apply"),
        Transition("blocked", "partially_applied", action="apply"),
        Transition("blocked", "settled", action="apply"),
        Transition("unblocked", "partially_applied", action="apply"),
        Transition("unblocked", "settled", action="apply"),
        Transition("partially_applied", "partially_applied", action="apply"),
        Transition("partially_applied", "settled", action="apply"),
    ),
    terminal_states=("settled", "cancelled"),
)

WORKFLOWS = {
    "invoice": INVOICE_WORKFLOW,
    "purchase": PURCHASE_WORKFLOW,
    "credit_note": CREDIT_NOTE_WORKFLOW,
}

logger.debug(
    "document_workflows_registered",
    extra={
        "workflows": [
            {
                "workflow_name": wf.name,
                "state_count": len(wf.states),
                "transition_count": len(wf.transitions),
                "initial_state": wf.initial_state,
            }
            for wf in WORKFLOWS.values()
        ],
    },
)
