from django.contrib.auth.models import AbstractUser
from django.db import models
from django.db.models import CharField
from django.utils.translation import gettext_lazy as _


class User(AbstractUser):
    """
    Chat account. ``username`` is the identity the realtime layer puts on
    every envelope and roster entry, so it is what clients address with
    ``toUser``.
    """

    # First and last name do not cover name patterns around the globe
    name = CharField(_("Display Name"), blank=True, max_length=255)
    # Audit timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    @property
    def identity(self) -> str:
        return self.username
