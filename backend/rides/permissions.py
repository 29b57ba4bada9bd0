from rest_framework.permissions import BasePermission


class HasRole(BasePermission):
    """
    Allows access only to authenticated users with ``role``.
    Keeps role check logic centralized.
    """
    role = None
    message = "You do not have the required role for this action."

    def has_permission(self, request, view):
        user = getattr(request, "user", None)
        if not user or not user.is_authenticated:
            return False
        return getattr(user, "role", None) == self.role


class IsRider(HasRole):
    role = "rider"
    message = "Only riders can do this."


class IsDriver(HasRole):
    role = "driver"
    message = "Only drivers allowed."
