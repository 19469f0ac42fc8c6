"""CLI tools for formvault administration."""

import logging
import sys
from pathlib import Path

import click

from formvault.core.errors import FormVaultError
from formvault.db.base import Base
from formvault.db.models import Form
from formvault.db.session import SessionLocal, engine
from formvault.services import export_service, form_service, key_service


@click.group()
def cli():
    """Formvault CLI tools."""
    logging.basicConfig(level=logging.INFO)


@cli.command("init-db")
def init_db():
    """
    Create all tables directly from the models.

    For local use only; deployed databases are migrated with alembic.
    """
    Base.metadata.create_all(bind=engine)
    click.echo("✓ Tables created")


@cli.command("enable-encryption")
@click.option("--project-id", required=True, type=int, help="Project ID")
@click.option("--passphrase", required=True, prompt=True, hide_input=True, confirmation_prompt=True)
@click.option("--hint", default=None, help="Passphrase hint stored with the key")
def enable_encryption(project_id: int, passphrase: str, hint: str | None):
    """
    Enable managed encryption for a project.

    Every live form of the project gets a new, encrypted version.

    Example:
        python -m formvault.cli enable-encryption --project-id 1 --hint "vault"
    """
    db = SessionLocal()
    try:
        project = form_service.get_project(db, project_id)
        key = key_service.set_managed_encryption(db, project, passphrase, hint)
        db.commit()
        click.echo(f"✓ Managed encryption enabled for project {project_id}")
        click.echo(f"  Key ID: {key.id}")
    except FormVaultError as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
        sys.exit(1)
    finally:
        db.close()


@cli.command("export")
@click.option("--project-id", required=True, type=int, help="Project ID")
@click.option("--form-id", "xml_form_id", required=True, help="XForm id of the form")
@click.option("--out", "out_path", required=True, type=click.Path(dir_okay=False, writable=True))
@click.option("--passphrase", default=None, help="Decrypt submissions this passphrase unlocks")
def export(project_id: int, xml_form_id: str, out_path: str, passphrase: str | None):
    """Write the submissions archive (CSV tables + media) to a file."""
    db = SessionLocal()
    try:
        form: Form = form_service.get_form(db, project_id, xml_form_id)
        context = export_service.prepare_export(db, form, passphrase)
        try:
            with open(out_path, "wb") as out:
                written = export_service.write_export(db, context, out)
        except Exception:
            # No truncated archive is left at the destination.
            Path(out_path).unlink(missing_ok=True)
            raise
        click.echo(f"✓ Wrote {written} bytes to {out_path}")
    except FormVaultError as e:
        click.echo(f"❌ Error: {e}")
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    cli()
