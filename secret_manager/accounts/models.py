from django.contrib.auth.models import (
    AbstractBaseUser,
    BaseUserManager,
    PermissionsMixin,
)
from django.db import models


class MemberManager(BaseUserManager):
    """Creates members keyed by email; there is no username."""

    def create_user(self, email, password=None, **extra_fields):
        if not email:
            raise ValueError("Members need an email address")
        member = self.model(email=self.normalize_email(email), **extra_fields)
        member.set_password(password)
        member.save(using=self._db)
        return member

    def create_superuser(self, email, password=None, **extra_fields):
        extra_fields.setdefault('is_staff', True)
        extra_fields.setdefault('is_superuser', True)
        for flag in ('is_staff', 'is_superuser'):
            if extra_fields.get(flag) is not True:
                raise ValueError(f"Superusers must have {flag}=True")
        return self.create_user(email, password, **extra_fields)


class CustomUser(AbstractBaseUser, PermissionsMixin):
    """Workspace member; owns personal secrets."""

    email = models.EmailField(max_length=255, unique=True)
    is_active = models.BooleanField(default=True)
    is_staff = models.BooleanField(default=False)

    objects = MemberManager()

    USERNAME_FIELD = 'email'
    REQUIRED_FIELDS = []

    def __str__(self):
        return self.email

    def is_member_of(self, workspace_id):
        """True when this user belongs to the workspace."""
        return self.is_active and self.memberships.filter(workspace_id=workspace_id).exists()
