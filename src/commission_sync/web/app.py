"""
Django application initialization.
"""

import os
from pathlib import Path

SETTINGS_MODULE = "commission_sync.web.settings"


def get_wsgi_application(config_path: str | Path | None = None):
    """
    Get the Django WSGI application configured with our settings.

    Args:
        config_path: Path to config.yaml (optional)
    """
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", SETTINGS_MODULE)
    # os.environ requires strings
    if config_path:
        os.environ["COMMISSION_SYNC_CONFIG"] = str(config_path)

    from django.core.wsgi import get_wsgi_application as django_wsgi

    return django_wsgi()


def run_server(
    host: str = "127.0.0.1",
    port: int = 8080,
    config_path: str | Path | None = None,
) -> None:
    """
    Run the Django development server.

    Args:
        host: Host to bind to
        port: Port to listen on
        config_path: Path to config.yaml
    """
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", SETTINGS_MODULE)
    if config_path:
        os.environ["COMMISSION_SYNC_CONFIG"] = str(config_path)

    import django

    django.setup()

    from django.core.management import execute_from_command_line

    print(f"\n🌐 Reconciliation endpoint at http://{host}:{port}/api/reconcile/")
    print(f"⚙️  Config: {os.environ.get('COMMISSION_SYNC_CONFIG', 'config.yaml')}")
    print("\nPress Ctrl+C to stop.\n")

    execute_from_command_line(
        [
            "manage.py",
            "runserver",
            f"{host}:{port}",
            "--noreload",
        ]
    )
