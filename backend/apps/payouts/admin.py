from django.contrib import admin
from django.utils.html import format_html
from import_export import resources, fields
from import_export.widgets import ForeignKeyWidget
from import_export.admin import ImportExportModelAdmin

from .models import DriverPayout, PayoutAdjustment, PayoutDelivery
from .services import PayoutService
from apps.drivers.models import Driver
from apps.utils.exceptions import BusinessLogicException


class DriverPayoutResource(resources.ModelResource):
    driver = fields.Field(
        column_name='driver_username',
        attribute='driver',
        widget=ForeignKeyWidget(Driver, 'user__username')
    )

    class Meta:
        model = DriverPayout
        fields = (
            'id',
            'payout_number',
            'driver',
            'payout_type',
            'status',
            'period_start',
            'period_end',
            'delivery_count',
            'delivery_fees',
            'distance_bonuses',
            'wait_time_bonuses',
            'peak_hour_bonuses',
            'tips',
            'adjustments',
            'deductions',
            'gross_amount',
            'net_amount',
            'currency',
            'iban',
            'transaction_id',
            'processed_at',
        )
        export_order = fields


class PayoutDeliveryInline(admin.TabularInline):
    model = PayoutDelivery
    extra = 0
    can_delete = False
    readonly_fields = ('delivery', 'delivery_number', 'completed_at', 'earnings', 'tip')


class PayoutAdjustmentInline(admin.TabularInline):
    model = PayoutAdjustment
    extra = 0
    can_delete = False
    readonly_fields = ('reason', 'amount', 'added_by', 'added_at', 'notes')


@admin.register(DriverPayout)
class DriverPayoutAdmin(ImportExportModelAdmin):
    resource_class = DriverPayoutResource

    list_display = (
        'payout_number',
        'driver',
        'payout_type',
        'status_badge',
        'net_amount',
        'delivery_count',
        'period_start',
        'created_at',
    )
    list_filter = ('status', 'payout_type', 'created_at')
    search_fields = ('payout_number', 'driver__user__username', 'transaction_id')
    list_select_related = ('driver', 'driver__user')
    raw_id_fields = ('driver', 'processed_by')
    inlines = [PayoutDeliveryInline, PayoutAdjustmentInline]
    actions = ['mark_processing', 'cancel_payouts']
    # Money moves through PayoutService only
    readonly_fields = (
        'payout_number', 'status', 'gross_amount', 'net_amount',
        'delivery_fees', 'distance_bonuses', 'wait_time_bonuses', 'peak_hour_bonuses',
        'tips', 'adjustments', 'processed_at', 'processed_by', 'retry_count',
        'created_at', 'updated_at',
    )

    def status_badge(self, obj):
        colors = {
            'pending': '#ffc107',
            'processing': '#17a2b8',
            'completed': '#28a745',
            'failed': '#dc3545',
            'cancelled': '#6c757d',
        }
        return format_html(
            '<span style="background-color: {}; color: white; padding: 3px 8px; border-radius: 4px; font-size: 0.8em;">{}</span>',
            colors.get(obj.status, '#6c757d'),
            obj.get_status_display()
        )
    status_badge.short_description = "Status"

    @admin.action(description='Mark selected payouts as processing')
    def mark_processing(self, request, queryset):
        done, failed = 0, 0
        for payout_id in queryset.values_list('id', flat=True):
            try:
                PayoutService.mark_processing(payout_id, processed_by=request.user)
                done += 1
            except BusinessLogicException:
                failed += 1
        self.message_user(request, f"{done} payouts processing, {failed} skipped.")

    @admin.action(description='Cancel selected payouts')
    def cancel_payouts(self, request, queryset):
        done, failed = 0, 0
        for payout_id in queryset.values_list('id', flat=True):
            try:
                PayoutService.cancel(payout_id, reason="Cancelled from admin")
                done += 1
            except BusinessLogicException:
                failed += 1
        self.message_user(request, f"{done} payouts cancelled, {failed} skipped.")
