import uuid

from django.conf import settings
from django.db import models

from .types import SecretType


class Workspace(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=200)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'secret_store_workspace'

    def __str__(self):
        return self.name


class Environment(models.Model):
    workspace = models.ForeignKey(Workspace, on_delete=models.CASCADE, related_name='environments')
    name = models.CharField(max_length=100)
    slug = models.SlugField(max_length=64)

    class Meta:
        db_table = 'secret_store_environment'
        constraints = [
            models.UniqueConstraint(fields=['workspace', 'slug'], name='unique_environment_slug'),
        ]

    def __str__(self):
        return f"{self.workspace_id}:{self.slug}"


class Membership(models.Model):
    workspace = models.ForeignKey(Workspace, on_delete=models.CASCADE, related_name='memberships')
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='memberships')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'secret_store_membership'
        constraints = [
            models.UniqueConstraint(fields=['workspace', 'user'], name='unique_workspace_membership'),
        ]


class EncryptedSecretFields(models.Model):
    """Client-side encrypted key, value and comment of a secret."""

    secret_key_ciphertext = models.TextField()
    secret_key_iv = models.CharField(max_length=64)
    secret_key_tag = models.CharField(max_length=64)
    secret_key_hash = models.CharField(max_length=128)
    secret_value_ciphertext = models.TextField()
    secret_value_iv = models.CharField(max_length=64)
    secret_value_tag = models.CharField(max_length=64)
    secret_value_hash = models.CharField(max_length=128)
    secret_comment_ciphertext = models.TextField(blank=True, default='')
    secret_comment_iv = models.CharField(max_length=64, blank=True, default='')
    secret_comment_tag = models.CharField(max_length=64, blank=True, default='')
    secret_comment_hash = models.CharField(max_length=128, blank=True, default='')

    class Meta:
        abstract = True


class Secret(EncryptedSecretFields):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    workspace = models.ForeignKey(Workspace, on_delete=models.CASCADE, related_name='secrets')
    environment = models.CharField(max_length=64)
    type = models.CharField(max_length=16, choices=SecretType.choices, default=SecretType.SHARED)
    # Owner; only set for personal secrets
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='personal_secrets',
    )
    version = models.PositiveIntegerField(default=1)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'secret_store_secret'
        ordering = ['created_at']
        indexes = [
            models.Index(fields=['workspace', 'environment', 'type'], name='secret_scope_idx'),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=['workspace', 'environment', 'secret_key_hash'],
                condition=models.Q(type=SecretType.SHARED),
                name='unique_shared_secret_key_hash',
            ),
            models.UniqueConstraint(
                fields=['workspace', 'environment', 'user', 'secret_key_hash'],
                condition=models.Q(type=SecretType.PERSONAL),
                name='unique_personal_secret_key_hash',
            ),
        ]

    def __str__(self):
        return f"Secret {self.id} v{self.version} ({self.type}) in {self.workspace_id}:{self.environment}"


class SecretVersion(EncryptedSecretFields):
    """Append-only history row. Survives hard deletion of its secret."""

    secret = models.ForeignKey(
        Secret,
        on_delete=models.DO_NOTHING,
        db_constraint=False,
        related_name='versions',
    )
    workspace = models.ForeignKey(Workspace, on_delete=models.CASCADE, related_name='secret_versions')
    version = models.PositiveIntegerField()
    is_deleted = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'secret_store_secretversion'
        ordering = ['secret_id', 'version']
        constraints = [
            models.UniqueConstraint(fields=['secret', 'version'], name='unique_secret_version'),
        ]

    def __str__(self):
        return f"SecretVersion {self.secret_id} v{self.version}"


class SecretSnapshot(models.Model):
    workspace = models.ForeignKey(Workspace, on_delete=models.CASCADE, related_name='snapshots')
    version = models.PositiveIntegerField()
    # Denormalized copy of every secret in the workspace at capture time
    secrets = models.JSONField(default=list)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'secret_store_secretsnapshot'
        ordering = ['-version']
        constraints = [
            models.UniqueConstraint(fields=['workspace', 'version'], name='unique_workspace_snapshot_version'),
        ]

    def __str__(self):
        return f"Snapshot v{self.version} of {self.workspace_id}"
