from typing import List, Optional, Sequence
import logging

from procurement.models.config import RolePermissionTable
from procurement.models.purchase_order import EnhancedStatus, PurchaseOrder
from procurement.models.validation import ValidationResult

logger = logging.getLogger(__name__)

WILDCARD = "*"

class PermissionChecker:
    """
    Role-based checks driven by a RolePermissionTable.
    The table is data, so a new config version changes who may do what.
    """

    def __init__(self, table: Optional[RolePermissionTable] = None):
        self.table = table or RolePermissionTable()

    def can_set_status(self, role: str, target: EnhancedStatus) -> bool:
        allowed = self.table.statuses_for(role)
        return WILDCARD in allowed or EnhancedStatus(target).value in allowed

    def check_approval_limit(self, role: str, amount: float) -> bool:
        """
        True when the amount is inside the role's ceiling. Roles without a
        ceiling are unlimited.
        """
        limit = self.table.approval_limit(role)
        return limit is None or amount <= limit

    def validate_user_permissions(
        self,
        role: str,
        target: EnhancedStatus,
        purchase_order: PurchaseOrder,
    ) -> ValidationResult:
        result = ValidationResult()
        target = EnhancedStatus(target)

        if not self.can_set_status(role, target):
            logger.warning(f"Role {role} denied transition of {purchase_order.po_number} to {target.value}")
            result.add_error(
                code="INSUFFICIENT_PERMISSIONS",
                message=f"User role '{role}' does not have permission to transition to '{target.value}'",
                field="permission",
            )

        if target == EnhancedStatus.APPROVED and not self.check_approval_limit(role, purchase_order.total):
            limit = self.table.approval_limit(role)
            result.add_error(
                code="EXCEEDS_APPROVAL_LIMIT",
                message=f"Purchase order amount {purchase_order.total:,.2f} exceeds {role} approval limit of {limit:,.2f}",
                field="approval_amount",
            )

        return result

    def validate_approval_thresholds(self, role: str, orders: Sequence[PurchaseOrder]) -> List[str]:
        """
        Aggregate limit check for a bulk decision. Advisory: returns the
        violations without stopping anything.
        """
        violations: List[str] = []
        total_amount = sum(po.total for po in orders)

        if not self.can_set_status(role, EnhancedStatus.APPROVED):
            violations.append(f"Role {role} cannot approve purchase orders")
            return violations

        bulk_limit = self.table.bulk_approval_limits.get(role)
        if bulk_limit is not None and total_amount > bulk_limit:
            violations.append(f"Total amount {total_amount:,.2f} exceeds {role} bulk limit of {bulk_limit:,.2f}")

        over_limit = [po.po_number for po in orders if not self.check_approval_limit(role, po.total)]
        if over_limit:
            violations.append(f"Orders above {role} approval limit: {', '.join(over_limit)}")

        return violations
