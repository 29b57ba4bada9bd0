import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Ride',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('pickup_latitude', models.DecimalField(decimal_places=6, max_digits=9)),
                ('pickup_longitude', models.DecimalField(decimal_places=6, max_digits=9)),
                ('pickup_address', models.TextField(blank=True, default='')),
                ('dropoff_latitude', models.DecimalField(decimal_places=6, max_digits=9)),
                ('dropoff_longitude', models.DecimalField(decimal_places=6, max_digits=9)),
                ('dropoff_address', models.TextField(blank=True, default='')),
                ('service_tier', models.CharField(choices=[('standard', 'Standard'), ('comfort', 'Comfort'), ('premium', 'Premium')], default='standard', max_length=20)),
                ('estimated_fare_cents', models.PositiveIntegerField()),
                ('rider_fee_cents', models.PositiveIntegerField(default=0)),
                ('driver_fee_cents', models.PositiveIntegerField(default=0)),
                ('total_charge_cents', models.PositiveIntegerField(default=0)),
                ('driver_payout_cents', models.PositiveIntegerField(default=0)),
                ('platform_fee_cents', models.PositiveIntegerField(default=0)),
                ('status', models.CharField(choices=[('requested', 'Requested'), ('dispatching', 'Dispatching'), ('offered', 'Offered'), ('accepted', 'Accepted'), ('started', 'Started'), ('in_progress', 'In Progress'), ('completed', 'Completed'), ('cancelled', 'Cancelled')], db_index=True, default='requested', max_length=20)),
                ('payment_status', models.CharField(choices=[('none', 'None'), ('requires_authorization', 'Requires Authorization'), ('authorized', 'Authorized'), ('captured', 'Captured'), ('capture_failed', 'Capture Failed'), ('cancelled', 'Cancelled'), ('refunded', 'Refunded'), ('refund_failed', 'Refund Failed')], db_index=True, default='none', max_length=30)),
                ('dispatch_attempts', models.PositiveIntegerField(default=0)),
                ('attempted_driver_ids', models.JSONField(blank=True, default=list)),
                ('search_deadline', models.DateTimeField(blank=True, null=True)),
                ('offer_expires_at', models.DateTimeField(blank=True, null=True)),
                ('driver_latitude', models.DecimalField(blank=True, decimal_places=6, max_digits=9, null=True)),
                ('driver_longitude', models.DecimalField(blank=True, decimal_places=6, max_digits=9, null=True)),
                ('payment_intent_id', models.CharField(blank=True, db_index=True, default='', max_length=255)),
                ('payment_authorized_at', models.DateTimeField(blank=True, null=True)),
                ('payment_captured_at', models.DateTimeField(blank=True, null=True)),
                ('payment_error', models.TextField(blank=True, default='')),
                ('transfer_destination', models.CharField(blank=True, default='', max_length=255)),
                ('transfer_id', models.CharField(blank=True, default='', max_length=255)),
                ('refund_id', models.CharField(blank=True, default='', max_length=255)),
                ('transfer_missing_flagged_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ('accepted_at', models.DateTimeField(blank=True, null=True)),
                ('started_at', models.DateTimeField(blank=True, null=True)),
                ('in_progress_at', models.DateTimeField(blank=True, null=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('cancelled_at', models.DateTimeField(blank=True, null=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('cancel_reason', models.CharField(blank=True, default='', max_length=64)),
                ('cancelled_by', models.CharField(blank=True, choices=[('rider', 'Rider'), ('driver', 'Driver'), ('system', 'System')], default='', max_length=10)),
                ('cancelled_by_user', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
                ('driver', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='rides_driven', to=settings.AUTH_USER_MODEL)),
                ('rider', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='rides_requested', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'rides',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='RideEvent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('event_type', models.CharField(choices=[('ride_created', 'Ride Created'), ('matching_started', 'Matching Started'), ('offer_created', 'Offer Created'), ('offer_expired', 'Offer Expired'), ('offer_declined', 'Offer Declined'), ('offer_accepted', 'Offer Accepted'), ('ride_accepted', 'Ride Accepted'), ('ride_started', 'Ride Started'), ('ride_in_progress', 'Ride In Progress'), ('ride_completed', 'Ride Completed'), ('ride_cancelled', 'Ride Cancelled'), ('search_timeout', 'Search Timeout'), ('driver_online_triggered_match', 'Driver Online Triggered Match'), ('payment_intent_created', 'Payment Intent Created'), ('payment_authorized', 'Payment Authorized'), ('payment_captured', 'Payment Captured'), ('payment_capture_failed', 'Payment Capture Failed'), ('payment_cancelled', 'Payment Cancelled'), ('payment_refunded', 'Payment Refunded'), ('payment_reconciled', 'Payment Reconciled'), ('transfer_missing', 'Transfer Missing')], max_length=40)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ('ride', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='events', to='rides.ride')),
            ],
            options={
                'db_table': 'ride_events',
                'ordering': ['created_at', 'id'],
            },
        ),
        migrations.CreateModel(
            name='RideOffer',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('accepted', 'Accepted'), ('declined', 'Declined'), ('expired', 'Expired'), ('taken_by_other', 'Taken By Other'), ('rejected', 'Rejected')], default='pending', max_length=20)),
                ('batch_number', models.PositiveIntegerField(default=1)),
                ('distance_meters', models.FloatField(blank=True, null=True)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('expires_at', models.DateTimeField()),
                ('responded_at', models.DateTimeField(blank=True, null=True)),
                ('driver', models.ForeignKey(limit_choices_to={'role': 'driver'}, on_delete=django.db.models.deletion.CASCADE, related_name='ride_offers', to=settings.AUTH_USER_MODEL)),
                ('ride', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='offers', to='rides.ride')),
            ],
            options={
                'db_table': 'ride_offers',
                'ordering': ['created_at', 'id'],
                'indexes': [models.Index(fields=['status', 'expires_at'], name='ride_offers_status_exp_idx')],
                'constraints': [models.UniqueConstraint(fields=('ride', 'driver'), name='unique_ride_driver')],
            },
        ),
    ]
