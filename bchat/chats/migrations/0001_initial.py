import django.utils.timezone
from django.db import migrations
from django.db import models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Chat",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("user", models.CharField(max_length=150)),
                ("room", models.CharField(blank=True, default="", max_length=255)),
                ("data", models.TextField()),
                (
                    "type",
                    models.CharField(
                        choices=[
                            ("text", "Text"),
                            ("image", "Image"),
                            ("file", "File"),
                            ("system", "System"),
                        ],
                        default="text",
                        max_length=16,
                    ),
                ),
                ("time", models.DateTimeField(default=django.utils.timezone.now)),
                ("broadcast", models.PositiveSmallIntegerField(default=0)),
                ("unicast", models.BooleanField(default=False)),
                ("to_user", models.CharField(blank=True, default="", max_length=150)),
                ("mentions", models.JSONField(blank=True, default=list)),
            ],
            options={
                "ordering": ["time"],
                "indexes": [
                    models.Index(
                        fields=["room", "time"],
                        name="chats_chat_room_4b1f2e_idx",
                    ),
                    models.Index(
                        fields=["user", "time"],
                        name="chats_chat_user_9c0d3a_idx",
                    ),
                    models.Index(
                        fields=["to_user", "time"],
                        name="chats_chat_to_user_7e5a61_idx",
                    ),
                ],
            },
        ),
    ]
