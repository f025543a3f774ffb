from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin

from trips.models import Trip

from .models import Driver


class DriverTripInline(admin.TabularInline):
    model = Trip
    fk_name = "driver"
    extra = 0
    can_delete = False
    show_change_link = True
    fields = ("vehicle", "started_at", "ended_at", "start_odometer", "end_odometer")
    readonly_fields = fields
    ordering = ("-started_at",)


@admin.register(Driver)
class DriverAdmin(BaseUserAdmin):
    ordering = ["name"]
    list_display = ["name", "email", "role", "is_active"]
    list_filter = ["role", "is_active"]
    readonly_fields = ("date_joined", "last_login")
    inlines = [DriverTripInline]
    fieldsets = (
        (None, {"fields": ("email", "password")}),
        ("Identity", {"fields": ("name", "license_no")}),
        ("Fleet role", {"fields": ("role", "is_active", "is_staff", "is_superuser")}),
        ("Activity", {"fields": ("date_joined", "last_login")}),
    )
    add_fieldsets = (
        (
            None,
            {
                "classes": ("wide",),
                "fields": ("email", "name", "role", "password1", "password2"),
            },
        ),
    )
    search_fields = ("email", "name", "license_no")
    filter_horizontal = ()
