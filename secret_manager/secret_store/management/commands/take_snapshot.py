"""Management command for writing a workspace snapshot on demand."""

from __future__ import annotations

from django.core.management.base import BaseCommand, CommandError

from secret_store.exceptions import SnapshotError
from secret_store.models import Workspace
from secret_store.service import SecretService


class Command(BaseCommand):
    help = 'Snapshot every secret of a workspace, outside of a push.'

    def add_arguments(self, parser):
        parser.add_argument('workspace_id', type=str, help='UUID of the workspace to snapshot')
        parser.add_argument('--list', action='store_true', help='List existing snapshots instead of writing one')

    def handle(self, *args, **options):
        workspace_id = options['workspace_id']
        try:
            exists = Workspace.objects.filter(pk=workspace_id).exists()
        except Exception as exc:
            raise CommandError(f'Invalid workspace id: {workspace_id}') from exc
        if not exists:
            raise CommandError(f'Workspace {workspace_id} does not exist')

        service = SecretService()
        if options['list']:
            self.list_snapshots(service, workspace_id)
            return

        try:
            snapshot = service.take_snapshot(workspace_id)
        except SnapshotError as exc:
            raise CommandError(f'Snapshot failed: {exc}') from exc

        self.stdout.write(self.style.SUCCESS(
            f'Snapshot v{snapshot.version} written with {len(snapshot.secrets)} secrets'
        ))

    def list_snapshots(self, service, workspace_id):
        snapshots = service.list_snapshots(workspace_id)
        if not snapshots:
            self.stdout.write(self.style.WARNING('No snapshots found.'))
            return
        self.stdout.write(self.style.SUCCESS('=== Workspace Snapshots ==='))
        for snapshot in snapshots:
            self.stdout.write(f'v{snapshot.version}  {snapshot.created_at}  {len(snapshot.secrets)} secrets')
