"""
Flask CLI commands for the academy fee ledger
"""

import click
from flask import Flask
from datetime import date
from decimal import Decimal
from db_single import create_academy, list_academies, get_session
from init_db import run_on_startup
from models import User, Tenant, Student, StudentStatusEnum
from fee_models import FeeStructure
from fee_helpers import generate_monthly_fees_for_tenant, parse_date, FeeValidationError
import logging

logger = logging.getLogger(__name__)

# Starter catalog for a new dance/martial arts academy
DEFAULT_FEE_STRUCTURES = [
    {"name": "Karate", "amount": Decimal("2000.00"), "description": "Karate monthly tuition"},
    {"name": "Bharatnatyam", "amount": Decimal("1500.00"), "description": "Bharatnatyam monthly tuition"},
    {"name": "Yoga", "amount": Decimal("2000.00"), "description": "Yoga monthly tuition"},
]


def register_cli_commands(app: Flask):
    """Register CLI commands with the Flask app"""

    @app.cli.command("setup-db")
    def setup_db_command():
        """Create database and tables"""
        click.echo("Setting up database...")
        if run_on_startup(app.config.get('SQLALCHEMY_DATABASE_URI')):
            click.echo("Database setup completed successfully!")
        else:
            click.echo("Database setup failed!")

    @app.cli.command("add-academy")
    @click.option("--slug", required=True, help="URL-friendly academy identifier (e.g., karate-central)")
    @click.option("--name", required=True, help="Full academy name (e.g., 'Karate Central Academy')")
    def add_academy_command(slug, name):
        """Add a new academy to the system"""
        click.echo(f"Creating academy: {name} ({slug})")

        success, message = create_academy(slug, name)

        if success:
            click.echo(f"OK: {message}")
            click.echo(f"Access URL: /{slug}/")
        else:
            click.echo(f"Error: {message}")

    @app.cli.command("list-academies")
    def list_academies_command():
        """List all academies in the system"""
        academies = list_academies()
        if not academies:
            click.echo("No academies found")
            return

        click.echo("Academies in system:")
        click.echo("-" * 60)
        for academy in academies:
            click.echo(f"  {academy.name}")
            click.echo(f"    Slug: {academy.slug}")
            click.echo(f"    Status: {'Active' if academy.is_active else 'Inactive'}")
            click.echo("-" * 60)

    @app.cli.command("create-academy-admin")
    @click.option("--slug", required=True, help="Academy slug")
    @click.option("--username", required=True, help="Admin username")
    @click.option("--email", required=True, help="Admin email")
    @click.option("--password", required=True, help="Admin password")
    @click.option("--first-name", default="", help="First name")
    @click.option("--last-name", default="", help="Last name")
    def create_academy_admin_command(slug, username, email, password, first_name, last_name):
        """Create an academy admin user"""
        session = get_session()
        try:
            academy = session.query(Tenant).filter_by(slug=slug).first()
            if not academy:
                click.echo(f"Error: Academy with slug '{slug}' not found")
                return

            existing = session.query(User).filter_by(tenant_id=academy.id, username=username).first()
            if existing:
                click.echo(f"Error: Username '{username}' already exists")
                return

            admin = User(
                tenant_id=academy.id,
                username=username,
                email=email,
                first_name=first_name,
                last_name=last_name,
                role='school_admin',
                is_active=True
            )
            admin.set_password(password)

            session.add(admin)
            session.commit()

            click.echo(f"OK: Academy admin created for {academy.name}")
            click.echo(f"   Username: {username}")
            click.echo(f"   Login URL: /{slug}/login")

        except Exception as e:
            session.rollback()
            click.echo(f"Error: Failed to create academy admin: {e}")
        finally:
            session.close()

    @app.cli.command("add-student")
    @click.option("--slug", required=True, help="Academy slug")
    @click.option("--name", required=True, help="Student name")
    @click.option("--phone", default=None, help="Student phone")
    @click.option("--parent-phone", default=None, help="Parent phone")
    @click.option("--email", default=None, help="Student email")
    def add_student_command(slug, name, phone, parent_phone, email):
        """Add a student to an academy"""
        session = get_session()
        try:
            academy = session.query(Tenant).filter_by(slug=slug).first()
            if not academy:
                click.echo(f"Error: Academy with slug '{slug}' not found")
                return

            student = Student(
                tenant_id=academy.id,
                name=name,
                phone=phone,
                parent_phone=parent_phone,
                email=email,
                status=StudentStatusEnum.ACTIVE
            )
            session.add(student)
            session.commit()

            click.echo(f"OK: Student {name} added with id {student.id}")

        except Exception as e:
            session.rollback()
            click.echo(f"Error: Failed to add student: {e}")
        finally:
            session.close()

    @app.cli.command("seed-fee-structures")
    @click.option("--slug", required=True, help="Academy slug to seed fee structures for")
    def seed_fee_structures_command(slug):
        """Seed the default fee structure catalog for an academy"""
        session = get_session()
        try:
            academy = session.query(Tenant).filter_by(slug=slug).first()
            if not academy:
                click.echo(f"Error: Academy with slug '{slug}' not found")
                return

            click.echo(f"Seeding fee structures for {academy.name}...")

            added = 0
            for data in DEFAULT_FEE_STRUCTURES:
                name_key = data["name"].lower()
                existing = session.query(FeeStructure).filter_by(
                    tenant_id=academy.id,
                    name_key=name_key
                ).first()

                if not existing:
                    session.add(FeeStructure(
                        tenant_id=academy.id,
                        name=data["name"],
                        name_key=name_key,
                        amount=data["amount"],
                        description=data["description"],
                        is_active=True
                    ))
                    added += 1

            session.commit()
            click.echo(f"OK: Fee structures added: {added}")

        except Exception as e:
            session.rollback()
            click.echo(f"Error: Failed to seed fee structures: {e}")
        finally:
            session.close()

    @app.cli.command("generate-monthly-fees")
    @click.option("--slug", required=True, help="Academy slug")
    @click.option("--date", "reference", default=None, help="Any day of the billing month, YYYY-MM-DD (default: today)")
    def generate_monthly_fees_command(slug, reference):
        """Generate the month's fees for every active student (for cron jobs)"""
        try:
            reference_date = parse_date(reference, 'date') or date.today()
        except FeeValidationError as e:
            click.echo(f"Error: {e}")
            return

        session = get_session()
        try:
            academy = session.query(Tenant).filter_by(slug=slug).first()
            if not academy:
                click.echo(f"Error: Academy with slug '{slug}' not found")
                return

            count = generate_monthly_fees_for_tenant(session, academy.id, reference_date)
            click.echo(f"OK: Generated {count} fee(s) for {reference_date.month:02d}/{reference_date.year}")
        finally:
            session.close()


# Usage examples for documentation
USAGE_EXAMPLES = """
# Setup database (run once)
flask setup-db

# Add a new academy
flask add-academy --slug "karate-central" --name "Karate Central Academy"

# Create academy admin
flask create-academy-admin --slug "karate-central" --username "admin" --email "admin@example.com" --password "admin123"

# Seed the default fee structures
flask seed-fee-structures --slug "karate-central"

# Add a student
flask add-student --slug "karate-central" --name "Asha Rao" --parent-phone "9800000000"

# Generate this month's fees (run daily or monthly from cron)
flask generate-monthly-fees --slug "karate-central"

# List all academies
flask list-academies
"""

if __name__ == "__main__":
    print("Flask CLI Commands for the Academy Fee Ledger")
    print("=" * 60)
    print(USAGE_EXAMPLES)
