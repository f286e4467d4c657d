from django.contrib import admin
from django.utils.html import format_html
from import_export import resources, fields
from import_export.widgets import ForeignKeyWidget
from import_export.admin import ImportExportModelAdmin

from .models import (
    Delivery,
    DeliveryChatMessage,
    DeliveryIssue,
    DeliveryStatusEvent,
    ProofOfDelivery,
)
from .services import DeliveryService
from .tasks import retry_auto_assign_delivery
from apps.drivers.models import Driver
from apps.orders.models import Order
from apps.utils.exceptions import BusinessLogicException


class DeliveryResource(resources.ModelResource):
    # Linking order by id
    order = fields.Field(
        column_name='order_id',
        attribute='order',
        widget=ForeignKeyWidget(Order, 'id')
    )

    # Linking driver by username
    driver = fields.Field(
        column_name='driver_username',
        attribute='driver',
        widget=ForeignKeyWidget(Driver, 'user__username')
    )

    class Meta:
        model = Delivery
        fields = (
            'id',
            'delivery_number',
            'order',
            'driver',
            'status',
            'job_status',
            'estimated_distance_km',
            'actual_distance_km',
            'base_fee',
            'distance_bonus',
            'wait_time_bonus',
            'peak_hour_bonus',
            'tip',
            'adjustments',
            'earnings_total',
            'actual_delivery_time',
            'created_at',
        )
        export_order = fields


class DeliveryStatusEventInline(admin.TabularInline):
    model = DeliveryStatusEvent
    extra = 0
    can_delete = False
    readonly_fields = ('event', 'note', 'latitude', 'longitude', 'actor', 'created_at')


class DeliveryIssueInline(admin.TabularInline):
    model = DeliveryIssue
    extra = 0
    fields = ('issue_type', 'description', 'is_resolved', 'resolution', 'created_at')
    readonly_fields = ('created_at',)


@admin.register(Delivery)
class DeliveryAdmin(ImportExportModelAdmin):
    resource_class = DeliveryResource

    list_display = (
        'delivery_number',
        'order_id_display',
        'driver_info',
        'status_badge',
        'job_status_badge',
        'earnings_total',
        'created_at_date'
    )
    list_filter = (
        'status',
        'job_status',
        'source',
        'created_at',
    )
    search_fields = (
        'delivery_number',
        'order__id',
        'driver__user__username',
        'driver__phone',
    )
    list_select_related = ('order', 'driver', 'driver__user')
    raw_id_fields = ('order', 'driver', 'restaurant')
    inlines = [DeliveryStatusEventInline, DeliveryIssueInline]
    list_per_page = 25
    actions = ['retry_assignment', 'cancel_deliveries']

    fieldsets = (
        ('Order & Driver', {
            'fields': ('delivery_number', 'order', 'restaurant', 'driver', 'job_status', 'source', 'is_priority')
        }),
        ('Delivery Details', {
            'fields': ('status', 'previous_status', 'pickup_address', 'dropoff_address', 'delivery_instructions')
        }),
        ('Assignment', {
            'fields': ('assignment_attempts', 'assigned_at', 'accepted_at', 'assignment_expires_at', 'rejected_driver_ids'),
            'classes': ('collapse',)
        }),
        ('Earnings', {
            'fields': ('base_fee', 'distance_bonus', 'wait_time_bonus', 'peak_hour_bonus', 'tip', 'adjustments', 'earnings_total', 'currency')
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    readonly_fields = (
        'delivery_number', 'status', 'previous_status', 'created_at', 'updated_at',
        'assigned_at', 'accepted_at', 'earnings_total',
    )

    def order_id_display(self, obj):
        return f"#{obj.order_id}"
    order_id_display.short_description = "Order ID"
    order_id_display.admin_order_field = 'order__id'

    def driver_info(self, obj):
        if obj.driver:
            return obj.driver.full_name
        return "Unassigned"
    driver_info.short_description = "Driver"
    driver_info.admin_order_field = 'driver__user__username'

    def status_badge(self, obj):
        colors = {
            'pending': '#6c757d',
            'assigned': '#007bff',
            'accepted': '#17a2b8',
            'picked_up': '#ffc107',
            'in_transit': '#17a2b8',
            'delivered': '#28a745',
            'failed': '#dc3545',
            'cancelled': '#dc3545',
            'returned': '#fd7e14',
        }
        color = colors.get(obj.status, '#6c757d')
        return format_html(
            '<span style="background-color: {}; color: white; padding: 3px 8px; border-radius: 4px; font-size: 0.8em;">{}</span>',
            color,
            obj.get_status_display()
        )
    status_badge.short_description = "Delivery Status"

    def job_status_badge(self, obj):
        colors = {
            'searching': '#ffc107',
            'assigned': '#28a745',
            'manual_intervention': '#dc3545',
        }
        color = colors.get(obj.job_status, '#6c757d')
        return format_html(
            '<span style="background-color: {}; color: white; padding: 2px 6px; border-radius: 3px; font-size: 0.8em;">{}</span>',
            color,
            obj.get_job_status_display()
        )
    job_status_badge.short_description = "Job Status"

    def created_at_date(self, obj):
        return obj.created_at.strftime('%d/%m/%Y %H:%M')
    created_at_date.short_description = "Created"
    created_at_date.admin_order_field = 'created_at'

    @admin.action(description='Retry auto-assignment')
    def retry_assignment(self, request, queryset):
        pending = queryset.filter(status='pending')
        pending.update(job_status='searching')
        count = 0
        for delivery_id in pending.values_list('id', flat=True):
            retry_auto_assign_delivery.delay(delivery_id)
            count += 1
        self.message_user(request, f"{count} deliveries queued for assignment.")

    @admin.action(description='Cancel selected deliveries')
    def cancel_deliveries(self, request, queryset):
        cancelled, failed = 0, 0
        for delivery in queryset:
            try:
                DeliveryService.cancel_delivery(delivery.id, cancelled_by="admin", reason="Cancelled from admin", actor=request.user)
                cancelled += 1
            except BusinessLogicException:
                failed += 1
        self.message_user(request, f"{cancelled} deliveries cancelled, {failed} skipped.")


@admin.register(ProofOfDelivery)
class ProofOfDeliveryAdmin(admin.ModelAdmin):
    list_display = ('delivery', 'pod_type', 'otp_verified', 'recipient_name', 'completed_at')
    list_filter = ('pod_type', 'otp_verified')
    raw_id_fields = ('delivery',)


@admin.register(DeliveryChatMessage)
class DeliveryChatMessageAdmin(admin.ModelAdmin):
    list_display = ('delivery', 'sender_type', 'message_type', 'created_at')
    list_filter = ('sender_type', 'message_type')
    raw_id_fields = ('delivery', 'sender')
