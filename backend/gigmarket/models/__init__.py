from gigmarket.models.gig import Gig
from gigmarket.models.order import Order, OrderMessage
from gigmarket.models.escrow import Escrow, EscrowPayout
from gigmarket.models.milestone import Milestone
from gigmarket.models.dispute import Dispute, DisputeEvidence
from gigmarket.models.audit_log import AuditLog

__all__ = [
    "Gig",
    "Order",
    "OrderMessage",
    "Escrow",
    "EscrowPayout",
    "Milestone",
    "Dispute",
    "DisputeEvidence",
    "AuditLog",
]
