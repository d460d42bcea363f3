from django.apps import AppConfig


class SecretStoreConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'secret_store'
    verbose_name = 'Secret store'

    def ready(self):
        # Register telemetry receivers
        from . import signals  # noqa: F401
