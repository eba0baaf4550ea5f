from django.db import migrations

CONSTRAINT_NAME = "booking_no_overlap_per_parking"


def add_exclusion_constraint(apps, schema_editor):
    if schema_editor.connection.vendor != "postgresql":
        return
    schema_editor.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")
    schema_editor.execute(
        f"""
        ALTER TABLE bookings_booking
          ADD CONSTRAINT {CONSTRAINT_NAME}
          EXCLUDE USING gist (
            parking_id WITH =,
            tstzrange(start_time, end_time, '[)') WITH &&
          )
          WHERE (status IN ('pending_payment', 'confirmed'))
        """
    )


def drop_exclusion_constraint(apps, schema_editor):
    if schema_editor.connection.vendor != "postgresql":
        return
    schema_editor.execute(
        f"ALTER TABLE bookings_booking DROP CONSTRAINT IF EXISTS {CONSTRAINT_NAME}"
    )


class Migration(migrations.Migration):

    dependencies = [
        ("bookings", "0001_initial"),
    ]

    operations = [
        migrations.RunPython(add_exclusion_constraint, drop_exclusion_constraint),
    ]
