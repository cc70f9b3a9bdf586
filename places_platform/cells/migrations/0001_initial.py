from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='GridCell',
            fields=[
                ('id', models.CharField(max_length=20, primary_key=True, serialize=False)),
                ('level', models.IntegerField()),
                ('center_lat', models.FloatField()),
                ('center_lng', models.FloatField()),
                ('query_radius_m', models.IntegerField()),
                ('last_fetched_at', models.DateTimeField(blank=True, null=True)),
                ('result_count_last_fetch', models.IntegerField(blank=True, null=True)),
                ('hit_cap_last_fetch', models.BooleanField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'grid_cells',
                'indexes': [
                    models.Index(fields=['last_fetched_at'], name='grid_cells_last_fetched_idx'),
                    models.Index(fields=['level'], name='grid_cells_level_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Place',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('external_id', models.CharField(max_length=255, unique=True)),
                ('name', models.CharField(max_length=500)),
                ('address', models.TextField(blank=True)),
                ('latitude', models.DecimalField(decimal_places=7, max_digits=10)),
                ('longitude', models.DecimalField(decimal_places=7, max_digits=10)),
                ('categories', models.JSONField(blank=True, default=list)),
                ('rating', models.DecimalField(blank=True, decimal_places=2, max_digits=3, null=True)),
                ('review_count', models.IntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'places',
            },
        ),
        migrations.CreateModel(
            name='RefreshJob',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('topic', models.CharField(max_length=100)),
                ('dedup_key', models.CharField(max_length=200)),
                ('payload', models.JSONField(default=dict)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('active', 'Active'), ('failed', 'Failed')], default='pending', max_length=20)),
                ('attempts_made', models.IntegerField(default=0)),
                ('max_attempts', models.IntegerField(default=3)),
                ('backoff_delay', models.FloatField(default=1.0)),
                ('available_at', models.DateTimeField()),
                ('last_error', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('finished_at', models.DateTimeField(blank=True, null=True)),
            ],
            options={
                'db_table': 'refresh_jobs',
                'indexes': [
                    models.Index(fields=['topic', 'status', 'available_at'], name='refresh_jobs_claim_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('status__in', ['pending', 'active'])), fields=('dedup_key',), name='refresh_jobs_open_dedup_key'),
                ],
            },
        ),
        migrations.CreateModel(
            name='EntityCell',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('entity_id', models.CharField(max_length=64)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('cell', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='entity_links', to='cells.gridcell')),
            ],
            options={
                'db_table': 'entity_cells',
                'unique_together': {('entity_id', 'cell')},
            },
        ),
    ]
