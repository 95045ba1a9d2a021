#!/usr/bin/env python3
"""
Database initialization script with demo data seeding.
Run this to set up a fresh database with printers, users, quotas, rates and
one webhook-enabled integration.
"""

import argparse
import secrets
from pathlib import Path

from config.config import DATABASE_PATH
from printcloud.models import AuthMode, ProtocolKind
from printcloud.services.integration_store import IntegrationStore

DEPARTMENT_RATES = [
    # (department, bw_page, color_page)
    ('IT', 0.03, 0.12),
    ('Marketing', 0.04, 0.15),
    ('Sales', 0.04, 0.13),
    ('Finance', 0.03, 0.10),
    ('Administration', 0.03, 0.11),
]

PRINTERS = [
    # (id, name, location, department)
    ('prn-admin-01', 'HP LaserJet Pro M404dn', 'Floor 1 - Reception', 'Administration'),
    ('prn-mkt-01', 'Canon imageRUNNER C3226i', 'Floor 2 - Marketing', 'Marketing'),
    ('prn-sales-01', 'Xerox VersaLink C405', 'Floor 2 - Sales', 'Sales'),
    ('prn-fin-01', 'Brother HL-L6400DW', 'Floor 3 - Finance', 'Finance'),
    ('prn-it-01', 'Epson EcoTank L15150', 'Floor 3 - IT', 'IT'),
]

USERS = [
    # (id, name, email, department, monthly_limit, color_limit)
    ('usr-admin', 'System Administrator', 'admin@example.com', 'IT', 2000, 500),
    ('usr-jsilva', 'John Silva', 'john.silva@example.com', 'Administration', 500, 50),
    ('usr-msantos', 'Mary Santos', 'mary.santos@example.com', 'Marketing', 1000, 300),
    ('usr-coliveira', 'Charles Oliveira', 'charles.oliveira@example.com', 'Sales', 800, 100),
    ('usr-acosta', 'Anna Costa', 'anna.costa@example.com', 'Finance', 600, 50),
]


def seed_reference_data(store: IntegrationStore):
    """Seed departments' rates, printers, users and quotas."""
    for department, bw_page, color_page in DEPARTMENT_RATES:
        store.set_print_cost(department, bw_page, color_page)
    print(f"✓ Created {len(DEPARTMENT_RATES)} department rate tables")

    for printer_id, name, location, department in PRINTERS:
        store.add_printer(printer_id, name, location, department)
    print(f"✓ Created {len(PRINTERS)} printers")

    for user_id, name, email, department, monthly_limit, color_limit in USERS:
        store.add_user(user_id, name, email, department)
        store.set_quota(user_id, monthly_limit=monthly_limit, color_limit=color_limit)
    print(f"✓ Created {len(USERS)} users with quotas")


def seed_integrations(store: IntegrationStore):
    """Seed one integration per protocol. Only the HTTP one is active."""
    webhook_secret = secrets.token_urlsafe(32)

    http = store.create_integration(
        printer_id='prn-mkt-01',
        protocol=ProtocolKind.HTTP,
        endpoint='http://192.168.1.21:8080/api',
        auth_mode=AuthMode.API_KEY,
        credentials={'api_key': secrets.token_urlsafe(24), 'webhook_secret': webhook_secret},
        poll_interval=300,
    )
    store.create_integration(
        printer_id='prn-admin-01',
        protocol=ProtocolKind.SNMP,
        endpoint='192.168.1.20',
        credentials={'community': 'public'},
        is_active=False,
    )
    store.create_integration(
        printer_id='prn-sales-01',
        protocol=ProtocolKind.IPP,
        endpoint='ipp://192.168.1.22/ipp/print',
        is_active=False,
    )
    print("✓ Created 3 integrations (HTTP active, SNMP and IPP inactive)")
    print("\n  Webhook endpoint for prn-mkt-01:")
    print("  POST /api/printer-integration/webhook")
    print(f"  X-Printer-Id: {http.printer_id}")
    print(f"  Secret: {webhook_secret}")


def main():
    parser = argparse.ArgumentParser(description='Initialize the Print Cloud database')
    parser.add_argument('--database', type=Path, default=DATABASE_PATH, help='SQLite database path')
    parser.add_argument('--no-seed', action='store_true', help='Create the schema only')
    args = parser.parse_args()

    print("=" * 70)
    print("DATABASE INITIALIZATION")
    print("=" * 70)
    print(f"\nDatabase: {args.database}")

    store = IntegrationStore(args.database)
    store.init_schema()
    print("✓ Schema created")

    if not args.no_seed:
        print("\nSeeding demo data...")
        seed_reference_data(store)
        seed_integrations(store)

    print("\n" + "=" * 70)
    print("✓ Database initialization complete!")
    print("=" * 70)


if __name__ == '__main__':
    main()
