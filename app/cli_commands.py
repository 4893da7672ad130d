"""
Flask CLI commands for store management.

Commands:
- flask init-db: Create all tables
- flask create-admin: Create a new admin user
- flask expire-payments: Expire stale payment intents
"""

import click
import re
from app.database import create_all, get_session
from app.models import AppUser, UserRole


def init_cli_commands(app):
    """Register CLI commands with Flask app."""

    @app.cli.command('init-db')
    def init_db_command():
        """Create database tables for every model."""
        create_all()
        click.echo(click.style('✅ Database tables created', fg='green'))

    @app.cli.command('create-admin')
    @click.option('--email', prompt=True, help='Admin email address')
    @click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Admin password')
    @click.option('--name', default=None, help='Full name')
    def create_admin(email, password, name):
        """Create a new admin user for the back office."""
        db_session = get_session()
        email = email.strip().lower()

        # Validate email format
        email_pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
        if not re.match(email_pattern, email):
            click.echo(click.style('❌ Invalid email. Use the format user@example.com', fg='red'))
            return

        if len(password) < 8:
            click.echo(click.style('❌ Password must be at least 8 characters.', fg='red'))
            return

        existing = db_session.query(AppUser).filter_by(email=email).first()
        if existing:
            click.echo(click.style(f'❌ A user with email {email} already exists', fg='red'))
            return

        try:
            admin = AppUser(email=email, full_name=name, role=UserRole.ADMIN.value, active=True)
            admin.set_password(password)

            db_session.add(admin)
            db_session.commit()

            click.echo(click.style('\n✅ Admin user created', fg='green', bold=True))
            click.echo(f'   Email: {email}')
            click.echo(f'   ID: {admin.id}')

        except Exception as e:
            db_session.rollback()
            click.echo(click.style(f'❌ Could not create admin: {str(e)}', fg='red'))
            raise

    @app.cli.command('expire-payments')
    @click.option('--minutes', type=int, default=None,
                  help='Age in minutes after which created intents expire (default PAYMENT_EXPIRY_MINUTES)')
    def expire_payments(minutes):
        """Mark stale `created` payment intents as expired."""
        from app.services.payment_service import PaymentService

        count = PaymentService(get_session()).expire_stale_payments(minutes)
        click.echo(click.style(f'✅ Expired {count} payment intent(s)', fg='green'))
