from django.contrib import admin

from .models import Vehicle


@admin.register(Vehicle)
class VehicleAdmin(admin.ModelAdmin):
    list_display = ["plate", "model", "last_known_odometer", "active"]
    list_filter = ["active"]
    search_fields = ("plate", "model")
