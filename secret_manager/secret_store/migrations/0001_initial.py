import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


def _material_fields():
    fields = []
    for prefix in ('secret_key', 'secret_value'):
        fields += [
            (f'{prefix}_ciphertext', models.TextField()),
            (f'{prefix}_iv', models.CharField(max_length=64)),
            (f'{prefix}_tag', models.CharField(max_length=64)),
            (f'{prefix}_hash', models.CharField(max_length=128)),
        ]
    fields += [
        ('secret_comment_ciphertext', models.TextField(blank=True, default='')),
        ('secret_comment_iv', models.CharField(blank=True, default='', max_length=64)),
        ('secret_comment_tag', models.CharField(blank=True, default='', max_length=64)),
        ('secret_comment_hash', models.CharField(blank=True, default='', max_length=128)),
    ]
    return fields


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Workspace',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('name', models.CharField(max_length=200)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'db_table': 'secret_store_workspace',
            },
        ),
        migrations.CreateModel(
            name='Environment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('name', models.CharField(max_length=100)),
                ('slug', models.SlugField(max_length=64)),
                ('workspace', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='environments', to='secret_store.workspace')),
            ],
            options={
                'db_table': 'secret_store_environment',
                'constraints': [models.UniqueConstraint(fields=('workspace', 'slug'), name='unique_environment_slug')],
            },
        ),
        migrations.CreateModel(
            name='Membership',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='memberships', to=settings.AUTH_USER_MODEL)),
                ('workspace', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='memberships', to='secret_store.workspace')),
            ],
            options={
                'db_table': 'secret_store_membership',
                'constraints': [models.UniqueConstraint(fields=('workspace', 'user'), name='unique_workspace_membership')],
            },
        ),
        migrations.CreateModel(
            name='Secret',
            fields=[('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False))] + _material_fields() + [
                ('environment', models.CharField(max_length=64)),
                ('type', models.CharField(choices=[('shared', 'Shared'), ('personal', 'Personal')], default='shared', max_length=16)),
                ('version', models.PositiveIntegerField(default=1)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('user', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE, related_name='personal_secrets', to=settings.AUTH_USER_MODEL)),
                ('workspace', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='secrets', to='secret_store.workspace')),
            ],
            options={
                'db_table': 'secret_store_secret',
                'ordering': ['created_at'],
                'indexes': [models.Index(fields=['workspace', 'environment', 'type'], name='secret_scope_idx')],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('type', 'shared')), fields=('workspace', 'environment', 'secret_key_hash'), name='unique_shared_secret_key_hash'),
                    models.UniqueConstraint(condition=models.Q(('type', 'personal')), fields=('workspace', 'environment', 'user', 'secret_key_hash'), name='unique_personal_secret_key_hash'),
                ],
            },
        ),
        migrations.CreateModel(
            name='SecretVersion',
            fields=[('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID'))] + _material_fields() + [
                ('version', models.PositiveIntegerField()),
                ('is_deleted', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('secret', models.ForeignKey(db_constraint=False, on_delete=django.db.models.deletion.DO_NOTHING, related_name='versions', to='secret_store.secret')),
                ('workspace', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='secret_versions', to='secret_store.workspace')),
            ],
            options={
                'db_table': 'secret_store_secretversion',
                'ordering': ['secret_id', 'version'],
                'constraints': [models.UniqueConstraint(fields=('secret', 'version'), name='unique_secret_version')],
            },
        ),
        migrations.CreateModel(
            name='SecretSnapshot',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('version', models.PositiveIntegerField()),
                ('secrets', models.JSONField(default=list)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('workspace', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='snapshots', to='secret_store.workspace')),
            ],
            options={
                'db_table': 'secret_store_secretsnapshot',
                'ordering': ['-version'],
                'constraints': [models.UniqueConstraint(fields=('workspace', 'version'), name='unique_workspace_snapshot_version'),],
            },
        ),
    ]
