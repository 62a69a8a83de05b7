from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin

from bchat.users.models import User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    list_display = ["username", "name", "is_superuser", "created_at"]
    search_fields = ["username", "name"]
