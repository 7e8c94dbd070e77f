# Flask CLI commands (run from the backend directory):
# - flask --app wsgi seed --yes
#   Wipe users, products and sales, then create a demo admin, sample
#   products and fifty random sales spread over the last 30 days.

import random
from datetime import datetime, timedelta

import click
from flask import current_app
from flask.cli import with_appcontext

from security import ADMIN_ROLE, hash_password

SEED_ADMIN_EMAIL = "admin@citadel.com"
SEED_ADMIN_PASSWORD = "admin123"
SEED_SALES_COUNT = 50

SEED_PRODUCTS = [
    ("Wireless Bluetooth Headphones", "Premium noise-canceling headphones with 30-hour battery life",
     "Electronics", 149.99, 50, "ELEC-001", ["audio", "wireless", "bluetooth"],
     [("Battery Life", "30 hours"), ("Connectivity", "Bluetooth 5.0")]),
    ("Smart Watch Pro", "Advanced fitness tracking with heart rate monitor and GPS",
     "Electronics", 299.99, 30, "ELEC-002", ["wearable", "fitness"],
     [("Display", '1.4" AMOLED'), ("Water Resistance", "5ATM")]),
    ("Laptop Stand Aluminum", "Ergonomic adjustable laptop stand for better posture",
     "Accessories", 49.99, 100, "ACC-001", ["desk", "ergonomic"],
     [("Material", "Aluminum Alloy"), ("Max Load", "10kg")]),
    ("Mechanical Keyboard RGB", "Professional gaming keyboard with customizable RGB lighting",
     "Electronics", 129.99, 45, "ELEC-003", ["gaming", "keyboard"],
     [("Switch Type", "Cherry MX Blue"), ("Connection", "USB-C")]),
    ("USB-C Hub 7-in-1", "Multi-port adapter with HDMI, USB 3.0, and SD card reader",
     "Accessories", 39.99, 8, "ACC-002", ["usb", "adapter"],
     [("HDMI Output", "4K@30Hz"), ("Power Delivery", "100W")]),
    ("Wireless Mouse Ergonomic", "Comfortable vertical mouse design to reduce wrist strain",
     "Accessories", 34.99, 75, "ACC-003", ["mouse", "wireless"],
     [("DPI", "Up to 2400"), ("Battery", "18 months")]),
    ("Portable SSD 1TB", "Ultra-fast external storage with USB 3.2 Gen 2",
     "Storage", 119.99, 60, "STOR-001", ["storage", "ssd"],
     [("Capacity", "1TB"), ("Read Speed", "Up to 1050MB/s")]),
    ("Webcam 1080p HD", "Professional webcam with auto-focus and noise reduction",
     "Electronics", 79.99, 40, "ELEC-004", ["webcam", "video"],
     [("Resolution", "1080p @ 30fps"), ("Microphone", "Dual stereo")]),
    ("Phone Stand Adjustable", "Universal phone holder for desk with 360 degree rotation",
     "Accessories", 19.99, 5, "ACC-004", ["phone", "stand"],
     [("Compatibility", 'All smartphones 4-7"'), ("Rotation", "360 degrees")]),
    ("LED Desk Lamp", "Smart desk lamp with touch control and USB charging port",
     "Accessories", 44.99, 35, "ACC-005", ["lighting", "led"],
     [("Brightness Levels", "5"), ("USB Port", "5V/1A")]),
]


def seed_database(db, rng=None, now=None):
    rng = rng or random.Random()
    now = now or datetime.utcnow()

    db.users.delete_many({})
    db.products.delete_many({})
    db.sales.delete_many({})

    admin_id = db.users.insert_one(
        {
            "name": "Admin User",
            "email": SEED_ADMIN_EMAIL,
            "password": hash_password(
                SEED_ADMIN_PASSWORD, current_app.config.get("BCRYPT_ROUNDS", 12)
            ),
            "role": ADMIN_ROLE,
            "created_at": now,
            "updated_at": now,
        }
    ).inserted_id

    product_documents = []
    for name, description, category, price, stock, sku, tags, specs in SEED_PRODUCTS:
        product_documents.append(
            {
                "name": name,
                "description": description,
                "category": category,
                "price": price,
                "stock": stock,
                "images": [f"https://res.cloudinary.com/demo/image/upload/{sku.lower()}.jpg"],
                "sku": sku,
                "status": "active",
                "tags": tags,
                "specifications": [{"key": key, "value": value} for key, value in specs],
                "created_by": str(admin_id),
                "created_at": now,
                "updated_at": now,
            }
        )
    db.products.insert_many(product_documents)

    window_start = now - timedelta(days=30)
    sales = []
    for _ in range(SEED_SALES_COUNT):
        product = rng.choice(product_documents)
        quantity = rng.randint(1, 5)
        sales.append(
            {
                "product_id": str(product["_id"]),
                "quantity": quantity,
                "total_amount": round(product["price"] * quantity, 2),
                "date": window_start + (now - window_start) * rng.random(),
                "created_at": now,
            }
        )
    db.sales.insert_many(sales)

    return len(product_documents), len(sales)


def register_commands(app):
    @app.cli.command("seed")
    @click.option("--yes", is_flag=True, help="Confirm wiping existing data.")
    @with_appcontext
    def seed_command(yes):
        """Replace all data with a demo admin, products and sales."""
        if not yes:
            raise click.UsageError("Refusing to wipe data without --yes.")

        db = current_app.extensions["mongo_db"]
        product_count, sale_count = seed_database(db)
        click.echo(f"Created admin {SEED_ADMIN_EMAIL} (password: {SEED_ADMIN_PASSWORD})")
        click.echo(f"Created {product_count} products and {sale_count} sales")
