# apps/notifications/admin.py
from django.contrib import admin
from django.utils.html import format_html
from django.utils.timezone import localtime
from .models import Notification


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = (
        'user',
        'event_badge',
        'title',
        'message_preview',
        'is_read',
        'created_at_date'
    )
    list_filter = (
        'event_type',
        'is_read',
        'created_at'
    )
    search_fields = (
        'user__username',
        'title',
        'message'
    )
    list_select_related = ('user',)
    raw_id_fields = ('user',)
    list_per_page = 25
    actions = ['mark_read']

    fieldsets = (
        ('Recipient', {
            'fields': ('user',)
        }),
        ('Notification Details', {
            'fields': ('event_type', 'title', 'message', 'data', 'is_read')
        }),
        ('Timestamps', {
            'fields': ('created_at',),
            'classes': ('collapse',)
        }),
    )

    readonly_fields = ('created_at',)

    def event_badge(self, obj):
        colors = {
            'delivery_assigned': '#007bff',
            'delivery_accepted': '#28a745',
            'delivery_cancelled': '#dc3545',
            'payout_failed': '#dc3545',
        }
        color = colors.get(obj.event_type, '#6c757d')
        return format_html(
            '<span style="background-color: {}; color: white; padding: 2px 6px; border-radius: 3px; font-size: 0.8em;">{}</span>',
            color,
            obj.get_event_type_display()
        )
    event_badge.short_description = "Event"

    def message_preview(self, obj):
        return obj.message[:50] + "..." if len(obj.message) > 50 else obj.message
    message_preview.short_description = "Message"

    def created_at_date(self, obj):
        if obj.created_at:
            return localtime(obj.created_at).strftime('%d/%m/%Y %H:%M')
        return "N/A"
    created_at_date.short_description = "Sent"
    created_at_date.admin_order_field = 'created_at'

    @admin.action(description='Mark selected notifications as read')
    def mark_read(self, request, queryset):
        updated = queryset.filter(is_read=False).update(is_read=True)
        self.message_user(request, f"{updated} notifications marked as read.")
