from django.contrib import admin

from .models import Trip


@admin.register(Trip)
class TripAdmin(admin.ModelAdmin):
    list_display = ["id", "vehicle", "driver", "started_at", "ended_at", "start_odometer", "end_odometer"]
    list_filter = ["vehicle", "ended_at"]
    search_fields = ("vehicle__plate", "driver__email", "driver__name", "notes")
    raw_id_fields = ("driver", "supervisor")
    date_hierarchy = "started_at"
