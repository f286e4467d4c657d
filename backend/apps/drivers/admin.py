from django.contrib import admin
from django.contrib.auth import get_user_model
from django.utils.html import format_html
from import_export import resources, fields
from import_export.widgets import ForeignKeyWidget
from import_export.admin import ImportExportModelAdmin

from .models import Driver, DriverShift, ShiftBreak
from .services import ShiftService
from apps.utils.exceptions import BusinessLogicException

User = get_user_model()


class DriverResource(resources.ModelResource):
    user = fields.Field(
        column_name='username',
        attribute='user',
        widget=ForeignKeyWidget(User, 'username')
    )

    class Meta:
        model = Driver
        fields = (
            'id', 'user', 'phone', 'status', 'vehicle_type', 'shift_status', 'is_available',
            'average_rating', 'completion_rate', 'completed_deliveries',
            'current_balance', 'lifetime_earnings', 'created_at',
        )
        export_order = fields


class ShiftBreakInline(admin.TabularInline):
    model = ShiftBreak
    extra = 0
    can_delete = False
    readonly_fields = ('started_at', 'ended_at', 'duration_minutes', 'reason')


@admin.register(Driver)
class DriverAdmin(ImportExportModelAdmin):
    resource_class = DriverResource
    list_display = ('driver_name', 'phone', 'verification_badge', 'availability_status', 'vehicle_type', 'current_balance', 'created_at_date')
    list_filter = ('status', 'shift_status', 'is_available', 'vehicle_type', 'created_at')
    search_fields = ('user__username', 'user__first_name', 'user__last_name', 'phone', 'iban')
    list_select_related = ('user',)
    raw_id_fields = ('user', 'current_delivery')
    filter_horizontal = ('restaurants',)
    list_per_page = 25
    actions = ['verify_drivers', 'suspend_drivers']

    fieldsets = (
        ('Personal Information', {'fields': ('user', 'phone', 'photo_url', 'status')}),
        ('Operational Details', {'fields': ('shift_status', 'is_available', 'vehicle_type', 'restaurants', 'current_delivery')}),
        ('Location', {'fields': ('current_latitude', 'current_longitude', 'location_updated_at'), 'classes': ('collapse',)}),
        ('Stats', {'fields': ('average_rating', 'total_ratings', 'completion_rate', 'total_deliveries', 'completed_deliveries', 'cancelled_deliveries')}),
        ('Earnings', {'fields': ('current_balance', 'lifetime_earnings')}),
        ('Bank Account', {'fields': ('bank_account_holder', 'iban', 'bic', 'bank_name', 'bank_account_verified')}),
    )

    readonly_fields = (
        'shift_status', 'current_delivery', 'average_rating', 'total_ratings', 'completion_rate',
        'total_deliveries', 'completed_deliveries', 'cancelled_deliveries',
        'current_balance', 'lifetime_earnings', 'location_updated_at',
    )

    def driver_name(self, obj):
        return obj.full_name
    driver_name.short_description = "Name"
    driver_name.admin_order_field = 'user__first_name'

    def verification_badge(self, obj):
        colors = {'pending': '#ffc107', 'verified': '#28a745', 'suspended': '#dc3545', 'deactivated': '#6c757d'}
        return format_html(
            '<span style="background-color: {}; color: white; padding: 2px 6px; border-radius: 3px; font-size: 0.8em;">{}</span>',
            colors.get(obj.status, '#6c757d'),
            obj.get_status_display()
        )
    verification_badge.short_description = "Verification"

    def availability_status(self, obj):
        if obj.is_available:
            return format_html('<span style="color: green; font-weight: bold;">● Online</span>')
        return format_html('<span style="color: red; font-weight: bold;">● {}</span>', obj.get_shift_status_display())
    availability_status.short_description = "Status"

    def created_at_date(self, obj):
        return obj.created_at.strftime('%d/%m/%Y')
    created_at_date.short_description = "Joined"

    @admin.action(description='Verify selected drivers')
    def verify_drivers(self, request, queryset):
        updated = queryset.update(status='verified')
        self.message_user(request, f"{updated} drivers verified.")

    @admin.action(description='Suspend selected drivers')
    def suspend_drivers(self, request, queryset):
        updated = queryset.update(status='suspended', is_available=False)
        self.message_user(request, f"{updated} drivers suspended.")


@admin.register(DriverShift)
class DriverShiftAdmin(admin.ModelAdmin):
    list_display = ('id', 'driver', 'started_at', 'ended_at', 'is_active', 'end_reason', 'completed_deliveries', 'earnings_total')
    list_filter = ('is_active', 'end_reason', 'started_at')
    search_fields = ('driver__user__username',)
    list_select_related = ('driver', 'driver__user')
    raw_id_fields = ('driver',)
    inlines = [ShiftBreakInline]
    actions = ['force_end']

    readonly_fields = (
        'started_at', 'ended_at', 'is_active', 'end_reason', 'duration_minutes',
        'total_active_minutes', 'total_break_minutes', 'earnings_total',
    )

    @admin.action(description='Force-end selected shifts')
    def force_end(self, request, queryset):
        ended, failed = 0, 0
        for shift_id in queryset.filter(is_active=True).values_list('id', flat=True):
            try:
                ShiftService.force_end_shift(shift_id, admin_notes=f"Ended by {request.user}")
                ended += 1
            except BusinessLogicException:
                failed += 1
        self.message_user(request, f"{ended} shifts ended, {failed} skipped.")
