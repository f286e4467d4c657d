# apps/drivers/permissions.py
from rest_framework import permissions


class IsDriver(permissions.BasePermission):
    message = "User is not a driver"

    def has_permission(self, request, view):
        return bool(
            request.user and
            request.user.is_authenticated and
            hasattr(request.user, 'driver_profile')
        )


class IsVerifiedDriver(IsDriver):
    message = "Driver account is not verified"

    def has_permission(self, request, view):
        return super().has_permission(request, view) and request.user.driver_profile.status == "verified"
