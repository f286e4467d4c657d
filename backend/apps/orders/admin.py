from django.contrib import admin
from django.contrib.auth import get_user_model
from import_export import resources, fields
from import_export.widgets import ForeignKeyWidget
from import_export.admin import ImportExportModelAdmin

from .models import Order
from apps.restaurants.models import Restaurant

User = get_user_model()


class OrderResource(resources.ModelResource):
    customer = fields.Field(
        column_name='customer_username',
        attribute='customer',
        widget=ForeignKeyWidget(User, 'username')
    )
    restaurant = fields.Field(
        column_name='restaurant_name',
        attribute='restaurant',
        widget=ForeignKeyWidget(Restaurant, 'name')
    )

    class Meta:
        model = Order
        fields = (
            'id',
            'customer',
            'restaurant',
            'status',
            'fulfillment_type',
            'total_amount',
            'delivery_address',
            'delivery_status',
            'created_at',
        )
        export_order = fields


@admin.register(Order)
class OrderAdmin(ImportExportModelAdmin):
    resource_class = OrderResource
    list_display = ('id', 'customer', 'restaurant', 'status', 'fulfillment_type', 'delivery_status', 'created_at')
    list_filter = ('status', 'fulfillment_type', 'delivery_status')
    search_fields = ('id', 'customer__username', 'restaurant__name')
    list_select_related = ('customer', 'restaurant')
    raw_id_fields = ('customer', 'restaurant')
    readonly_fields = ('delivery_status', 'driver_info', 'created_at', 'updated_at')
    list_per_page = 25
