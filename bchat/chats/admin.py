from django.contrib import admin

from bchat.chats import models


@admin.register(models.Chat)
class ChatAdmin(admin.ModelAdmin):
    list_display = ["id", "user", "room", "to_user", "type", "preview", "time"]
    search_fields = ["user", "room", "to_user", "data"]
    list_filter = ["type", "broadcast", "unicast", "time"]
