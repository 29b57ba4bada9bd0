import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
        ('rides', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='DriverProfile',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('vehicle_number', models.CharField(max_length=20, unique=True)),
                ('service_tier', models.CharField(choices=[('standard', 'Standard'), ('comfort', 'Comfort'), ('premium', 'Premium')], default='standard', max_length=20)),
                ('is_approved', models.BooleanField(default=False)),
                ('is_online', models.BooleanField(default=False)),
                ('is_busy', models.BooleanField(default=False)),
                ('current_ride_status', models.CharField(blank=True, default='', max_length=20)),
                ('current_latitude', models.DecimalField(blank=True, decimal_places=6, max_digits=10, null=True)),
                ('current_longitude', models.DecimalField(blank=True, decimal_places=6, max_digits=10, null=True)),
                ('last_location_at', models.DateTimeField(blank=True, null=True)),
                ('last_heartbeat_at', models.DateTimeField(blank=True, null=True)),
                ('payout_account_id', models.CharField(blank=True, default='', max_length=255)),
                ('payout_account_status', models.CharField(choices=[('none', 'Not Connected'), ('pending', 'Pending'), ('active', 'Active'), ('restricted', 'Restricted')], default='none', max_length=20)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('current_ride', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='rides.ride')),
                ('user', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='driver_profile', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'driver_profiles',
                'indexes': [models.Index(fields=['is_online', 'is_busy'], name='driver_online_busy_idx')],
            },
        ),
        migrations.CreateModel(
            name='BlockedRider',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('driver', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='blocked_riders', to=settings.AUTH_USER_MODEL)),
                ('rider', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='blocked_by_drivers', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'driver_blocked_riders',
                'constraints': [models.UniqueConstraint(fields=('driver', 'rider'), name='unique_driver_blocked_rider')],
            },
        ),
        migrations.CreateModel(
            name='DriverLedgerEntry',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('entry_type', models.CharField(choices=[('trip_earning', 'Trip Earning')], default='trip_earning', max_length=20)),
                ('amount_cents', models.IntegerField()),
                ('created_at', models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ('driver', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='ledger_entries', to=settings.AUTH_USER_MODEL)),
                ('ride', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='ledger_entries', to='rides.ride')),
            ],
            options={
                'db_table': 'driver_ledger_entries',
                'ordering': ['-created_at'],
                'constraints': [models.UniqueConstraint(fields=('ride', 'entry_type'), name='unique_ride_ledger_entry')],
            },
        ),
    ]
