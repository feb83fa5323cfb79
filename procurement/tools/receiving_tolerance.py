import logging
import math
from datetime import datetime, timezone
from typing import List, Optional

from procurement.models.config import (
    DamagedItemHandling,
    DamageHandlingConfig,
    ExpiryHandlingConfig,
    QualityCheckConfig,
    ReceivingToleranceSettings,
    ToleranceConfig,
)
from procurement.models.receiving import (
    ItemCondition,
    QualityStatus,
    ReceiptItem,
    ReceivingContext,
    ReceivingStatistics,
)
from procurement.models.validation import ReceivingAdjustment, ReceivingValidationResult

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400

def _days_until(expiry: datetime, reference: datetime) -> int:
    # Mixed naive/aware datetimes are treated as UTC
    if (expiry.tzinfo is None) != (reference.tzinfo is None):
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        else:
            reference = reference.replace(tzinfo=timezone.utc)
    return math.ceil((expiry - reference).total_seconds() / SECONDS_PER_DAY)

def _field(item: ReceiptItem, name: str) -> str:
    return f"items.{item.purchase_order_item_id}.{name}"

class ReceivingToleranceValidator:
    """
    Checks a receipt against the configured receiving rules.
    Pure: every rule group runs and the violations accumulate in one result.
    """

    def __init__(self, settings: Optional[ReceivingToleranceSettings] = None):
        self.settings = settings or ReceivingToleranceSettings()

    def validate_receiving(self, receipt_items: List[ReceiptItem], context: ReceivingContext) -> ReceivingValidationResult:
        result = ReceivingValidationResult()

        self._validate_receiving_constraints(receipt_items, context, result)

        if context.is_partial_receipt:
            self._validate_partial_receiving(context, result)

        for item in receipt_items:
            self._validate_receipt_item(item, context, result)

        result.refresh()
        logger.info(
            f"Receiving validation for PO {context.purchase_order.po_number}: "
            f"valid={result.is_valid} approval={result.requires_approval} "
            f"errors={result.error_codes()} warnings={result.warning_codes()}"
        )
        return result

    def _validate_receiving_constraints(
        self,
        receipt_items: List[ReceiptItem],
        context: ReceivingContext,
        result: ReceivingValidationResult,
    ) -> None:
        total_received = sum(item.received_quantity for item in receipt_items)
        if not receipt_items or total_received == 0:
            result.add_error(code="NO_ITEMS_RECEIVED", message="No items are being received")

        seen = set()
        duplicates = set()
        for item in receipt_items:
            if item.purchase_order_item_id in seen:
                duplicates.add(item.purchase_order_item_id)
            seen.add(item.purchase_order_item_id)
        if duplicates:
            result.add_error(
                code="DUPLICATE_RECEIPT_ITEMS",
                message=f"Duplicate items in receipt: {', '.join(sorted(duplicates))}",
            )

        if context.receiving_user.role not in self.settings.receiving_roles:
            result.add_error(
                code="INSUFFICIENT_PERMISSIONS",
                message=f"Role '{context.receiving_user.role}' does not have permission to receive goods",
                field="receiving_user.role",
            )

    def _validate_partial_receiving(self, context: ReceivingContext, result: ReceivingValidationResult) -> None:
        config = self.settings.partial_receiving

        if not config.enabled or not config.allow_partial_receipts:
            result.add_error(code="PARTIAL_RECEIVING_NOT_ALLOWED", message="Partial receiving is not allowed")
            return

        if context.previous_receipts_count >= config.max_partial_receipts:
            result.add_error(
                code="MAX_PARTIAL_RECEIPTS_EXCEEDED",
                message=f"Maximum partial receipts exceeded ({config.max_partial_receipts})",
            )

        reason = context.partial_reason or context.metadata.get("partial_reason")
        if config.require_reason_for_partial and not reason:
            result.add_error(
                code="PARTIAL_REASON_REQUIRED",
                message="Reason required for partial receipt",
                field="partial_reason",
            )

        if config.notify_on_partial_receipt:
            result.adjustments.append(ReceivingAdjustment(
                type="quantity",
                description="Partial receipt notification required",
                original_value="full",
                adjusted_value="partial",
                reason=reason or "Partial delivery",
            ))

    def _validate_receipt_item(self, item: ReceiptItem, context: ReceivingContext, result: ReceivingValidationResult) -> None:
        if item.received_quantity < 0:
            result.add_error(
                code="INVALID_RECEIVED_QUANTITY",
                message=f"Received quantity for {item.product_name} cannot be negative",
                field=_field(item, "received_quantity"),
            )
            return

        if item.ordered_quantity > 0:
            variance = item.quantity_variance()
            if variance > 0:
                self._validate_over_receiving(item, variance, self.settings.over_receiving, result)
            elif variance < 0 and not context.is_partial_receipt:
                self._validate_under_receiving(item, -variance, self.settings.under_receiving, result)

        if self.settings.quality_checks.enabled:
            self._validate_quality_checks(item, context, self.settings.quality_checks, result)

        if self.settings.expiry_handling.enabled:
            self._validate_expiry_handling(item, context, self.settings.expiry_handling, result)

        if item.condition == ItemCondition.DAMAGED and self.settings.damage_handling.enabled:
            self._validate_damage_handling(item, self.settings.damage_handling, result)

    def _validate_over_receiving(
        self,
        item: ReceiptItem,
        variance: float,
        config: ToleranceConfig,
        result: ReceivingValidationResult,
    ) -> None:
        if not config.enabled:
            return

        tolerance = config.units(config.tolerance_value, item.ordered_quantity)
        warning = config.units(config.warning_threshold, item.ordered_quantity)
        block = config.units(config.block_threshold, item.ordered_quantity)
        field = _field(item, "received_quantity")

        # Reaching the block threshold blocks
        if block is not None and variance >= block:
            result.add_error(
                code="OVER_RECEIVING_BLOCKED",
                message=f"Over-receiving blocked: received {variance:g} units over ordered quantity for {item.product_name}",
                field=field,
            )
        elif variance > tolerance:
            if config.require_approval:
                result.require_approval(config.approval_roles)
                result.add_warning(
                    code="OVER_RECEIVING_APPROVAL_REQUIRED",
                    message=f"Over-receiving requires approval: {variance:g} units over ordered quantity for {item.product_name}",
                    field=field,
                    recommendation="Obtain approval from authorized personnel before proceeding",
                )
            elif not config.auto_accept:
                result.add_error(
                    code="OVER_RECEIVING_NOT_ALLOWED",
                    message=f"Over-receiving not allowed: {variance:g} units over tolerance for {item.product_name}",
                    field=field,
                )
        elif variance > warning:
            result.add_warning(
                code="OVER_RECEIVING_WARNING",
                message=f"Over-receiving warning: {variance:g} units over ordered quantity for {item.product_name}",
                field=field,
                recommendation="Verify the received quantity is correct",
            )

        if config.notify_on_variance and variance > warning:
            result.adjustments.append(ReceivingAdjustment(
                type="quantity",
                description="Over-receiving variance detected",
                original_value=item.ordered_quantity,
                adjusted_value=item.total_received(),
                reason=f"Received {variance:g} units more than ordered",
                requires_approval=config.require_approval,
            ))

    def _validate_under_receiving(
        self,
        item: ReceiptItem,
        shortage: float,
        config: ToleranceConfig,
        result: ReceivingValidationResult,
    ) -> None:
        # Shortages only ever warn
        if not config.enabled:
            return

        tolerance = config.units(config.tolerance_value, item.ordered_quantity)
        warning = config.units(config.warning_threshold, item.ordered_quantity)
        field = _field(item, "received_quantity")

        if shortage > tolerance:
            if config.require_approval:
                result.require_approval(config.approval_roles)
                result.add_warning(
                    code="UNDER_RECEIVING_APPROVAL_REQUIRED",
                    message=f"Under-receiving requires approval: {shortage:g} units short for {item.product_name}",
                    field=field,
                    recommendation="Obtain approval to close order with shortage",
                )
            else:
                result.add_warning(
                    code="UNDER_RECEIVING_SIGNIFICANT",
                    message=f"Significant under-receiving: {shortage:g} units short for {item.product_name}",
                    field=field,
                    recommendation="Consider contacting supplier about shortage",
                )
        elif shortage > warning:
            result.add_warning(
                code="UNDER_RECEIVING_WARNING",
                message=f"Under-receiving warning: {shortage:g} units short for {item.product_name}",
                field=field,
                recommendation="Verify if remaining items are expected",
            )

    def _validate_quality_checks(
        self,
        item: ReceiptItem,
        context: ReceivingContext,
        config: QualityCheckConfig,
        result: ReceivingValidationResult,
    ) -> None:
        field = _field(item, "quality_status")
        recorded = item.quality_status not in (None, QualityStatus.PENDING)

        if recorded and context.receiving_user.role not in config.quality_check_roles:
            result.add_error(
                code="QUALITY_CHECK_UNAUTHORIZED",
                message=f"Role '{context.receiving_user.role}' is not authorized to record quality checks for {item.product_name}",
                field=field,
            )
            return

        if not recorded:
            if config.require_quality_check:
                result.add_error(
                    code="QUALITY_CHECK_REQUIRED",
                    message=f"Quality check required for {item.product_name}",
                    field=field,
                )
            return

        if item.quality_status == QualityStatus.REJECTED:
            if config.damaged_item_handling == DamagedItemHandling.REJECT:
                result.add_error(
                    code="QUALITY_CHECK_FAILED",
                    message=f"Quality check failed for {item.product_name}",
                    field=field,
                )
            elif config.damaged_item_handling == DamagedItemHandling.PARTIAL_ACCEPT:
                result.add_warning(
                    code="QUALITY_CHECK_CONDITIONAL",
                    message=f"Quality check failed but items accepted conditionally for {item.product_name}",
                    field=field,
                    recommendation="Document the condition and consider supplier feedback",
                )

    def _validate_expiry_handling(
        self,
        item: ReceiptItem,
        context: ReceivingContext,
        config: ExpiryHandlingConfig,
        result: ReceivingValidationResult,
    ) -> None:
        if not config.check_expiry_on_receipt:
            return
        if item.expiry_date is None and item.condition != ItemCondition.EXPIRED:
            return

        field = _field(item, "expiry_date")
        days = _days_until(item.expiry_date, context.receipt_date) if item.expiry_date else None

        if item.condition == ItemCondition.EXPIRED or (days is not None and days < 0):
            detail = f"expired {abs(days)} days ago" if days is not None and days < 0 else "marked expired"
            if config.reject_expired_items:
                result.add_error(
                    code="EXPIRED_ITEMS_REJECTED",
                    message=f"Expired items rejected for {item.product_name} ({detail})",
                    field=field,
                )
            else:
                result.add_warning(
                    code="EXPIRED_ITEMS_ACCEPTED",
                    message=f"Expired items accepted for {item.product_name} ({detail})",
                    field=field,
                    recommendation="Segregate expired stock and notify the supplier",
                )
        elif days <= config.near_expiry_threshold_days:
            if config.accept_near_expiry_with_approval:
                result.require_approval(config.approval_roles)
                result.add_warning(
                    code="NEAR_EXPIRY_APPROVAL_REQUIRED",
                    message=f"Near-expiry items require approval for {item.product_name} (expires in {days} days)",
                    field=field,
                    recommendation="Obtain approval to accept near-expiry items",
                )
            else:
                result.add_warning(
                    code="NEAR_EXPIRY_WARNING",
                    message=f"Near-expiry warning for {item.product_name} (expires in {days} days)",
                    field=field,
                    recommendation="Plan for quick turnover of these items",
                )
        elif days <= config.warn_before_expiry_days:
            result.add_warning(
                code="EXPIRY_WARNING",
                message=f"Expiry warning for {item.product_name} (expires in {days} days)",
                field=field,
                recommendation="Monitor expiry date and prioritize usage",
            )

    def _validate_damage_handling(
        self,
        item: ReceiptItem,
        config: DamageHandlingConfig,
        result: ReceivingValidationResult,
    ) -> None:
        report = item.damage_report
        if report is None:
            if config.require_damage_report:
                result.add_error(
                    code="DAMAGE_REPORT_REQUIRED",
                    message=f"Damage report required for damaged {item.product_name}",
                    field=_field(item, "damage_report"),
                )
            return

        if config.photograph_required and not report.photographs:
            result.add_error(
                code="DAMAGE_PHOTOS_REQUIRED",
                message=f"Damage photographs required for damaged {item.product_name}",
                field=_field(item, "damage_report.photographs"),
            )

        if report.category not in config.damage_categories:
            result.add_warning(
                code="INVALID_DAMAGE_CATEGORY",
                message=f"Invalid damage category '{report.category}' for {item.product_name}",
                field=_field(item, "damage_report.category"),
                recommendation=f"Use one of: {', '.join(config.damage_categories)}",
            )

        if report.affected_quantity > item.received_quantity:
            result.add_warning(
                code="DAMAGE_QUANTITY_EXCEEDS_RECEIVED",
                message=f"Damaged quantity {report.affected_quantity:g} exceeds received quantity {item.received_quantity:g} for {item.product_name}",
                field=_field(item, "damage_report.affected_quantity"),
                recommendation="Correct the affected quantity on the damage report",
            )

        if config.notify_supplier_on_damage and not report.supplier_notified:
            result.adjustments.append(ReceivingAdjustment(
                type="damage",
                description="Supplier notification required for damaged items",
                original_value=ItemCondition.GOOD.value,
                adjusted_value=ItemCondition.DAMAGED.value,
                reason=report.description,
            ))

    def calculate_receiving_statistics(
        self,
        receipt_items: List[ReceiptItem],
        reference_date: Optional[datetime] = None,
    ) -> ReceivingStatistics:
        reference_date = reference_date or datetime.utcnow()
        stats = ReceivingStatistics(total_items=len(receipt_items))
        total_variance_percentage = 0.0

        for item in receipt_items:
            total_received = item.total_received()
            variance = item.quantity_variance()
            stats.total_variance += variance
            if item.ordered_quantity > 0:
                total_variance_percentage += abs(variance / item.ordered_quantity) * 100

            if total_received >= item.ordered_quantity:
                stats.fully_received_items += 1
            elif total_received > 0:
                stats.partially_received_items += 1

            if item.condition == ItemCondition.DAMAGED:
                stats.damaged_items += 1
            if item.condition == ItemCondition.EXPIRED or (
                item.expiry_date is not None and _days_until(item.expiry_date, reference_date) < 0
            ):
                stats.expired_items += 1

        if stats.total_items:
            stats.completion_percentage = round(
                (stats.fully_received_items + stats.partially_received_items) / stats.total_items * 100, 2
            )
            stats.average_variance_percentage = round(total_variance_percentage / stats.total_items, 2)
        return stats

    def generate_receiving_recommendations(
        self,
        validation: ReceivingValidationResult,
        receipt_items: List[ReceiptItem],
        reference_date: Optional[datetime] = None,
    ) -> List[str]:
        reference_date = reference_date or datetime.utcnow()
        recommendations = []

        if validation.warnings:
            recommendations.append("Review warning messages before proceeding")

        if validation.requires_approval:
            recommendations.append("Obtain required approvals before completing receipt")

        if any(item.condition == ItemCondition.DAMAGED for item in receipt_items):
            recommendations.append("Document all damaged items with photos and detailed descriptions")
            recommendations.append("Contact supplier about damaged goods for credit or replacement")

        window = self.settings.expiry_handling.warn_before_expiry_days
        if any(
            item.expiry_date is not None and _days_until(item.expiry_date, reference_date) <= window
            for item in receipt_items
        ):
            recommendations.append("Prioritize usage of near-expiry items")
            recommendations.append("Update inventory system with expiry dates")

        if any(item.quantity_variance() > 0 for item in receipt_items):
            recommendations.append("Verify over-received quantities with delivery documentation")
            recommendations.append("Consider updating purchase order if acceptable")

        return recommendations
