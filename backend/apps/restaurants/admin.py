from django.contrib import admin
from import_export import resources
from import_export.admin import ImportExportModelAdmin

from .models import Restaurant


class RestaurantResource(resources.ModelResource):
    class Meta:
        model = Restaurant
        fields = ('id', 'name', 'slug', 'street', 'city', 'postal_code', 'country', 'latitude', 'longitude', 'is_active')
        export_order = fields


@admin.register(Restaurant)
class RestaurantAdmin(ImportExportModelAdmin):
    resource_class = RestaurantResource
    list_display = ('name', 'city', 'latitude', 'longitude', 'is_active')
    list_filter = ('is_active', 'city')
    search_fields = ('name', 'slug', 'city')
    prepopulated_fields = {'slug': ('name',)}
    list_per_page = 25
