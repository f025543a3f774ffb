from rest_framework import permissions


class IsSupervisor(permissions.BasePermission):
    """Encarregados and admins may close, correct, delete and sweep other people's trips."""

    message = "Only an encarregado or admin can perform this action."

    def has_permission(self, request, view):  # type: ignore[override]
        user = request.user
        return bool(user and user.is_authenticated and getattr(user, "is_supervisor", False))
