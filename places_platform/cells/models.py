# cells/models.py
from django.db import models
from django.db.models import Q


class GridCell(models.Model):
    """
    One H3 hexagon at a fixed resolution.
    Shared by every entity whose area it covers.
    """
    id = models.CharField(max_length=20, primary_key=True)  # H3 index
    level = models.IntegerField()
    center_lat = models.FloatField()
    center_lng = models.FloatField()
    query_radius_m = models.IntegerField()

    last_fetched_at = models.DateTimeField(null=True, blank=True)
    result_count_last_fetch = models.IntegerField(null=True, blank=True)
    # True when the last fetch filled a whole provider page
    hit_cap_last_fetch = models.BooleanField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'grid_cells'
        indexes = [
            models.Index(fields=['last_fetched_at'], name='grid_cells_last_fetched_idx'),
            models.Index(fields=['level'], name='grid_cells_level_idx'),
        ]

    def __str__(self):
        return f"GridCell({self.id}) L{self.level}"


class EntityCell(models.Model):
    """Links an owning entity (e.g. an event) to a cell covering its area."""
    entity_id = models.CharField(max_length=64)
    cell = models.ForeignKey(
        GridCell, on_delete=models.CASCADE, related_name='entity_links'
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'entity_cells'
        unique_together = ['entity_id', 'cell']

    def __str__(self):
        return f"EntityCell({self.entity_id} → {self.cell_id})"


class Place(models.Model):
    """One place from the search provider, keyed by its provider id."""
    external_id = models.CharField(max_length=255, unique=True)
    name = models.CharField(max_length=500)
    address = models.TextField(blank=True)
    latitude = models.DecimalField(max_digits=10, decimal_places=7)
    longitude = models.DecimalField(max_digits=10, decimal_places=7)
    categories = models.JSONField(default=list, blank=True)
    rating = models.DecimalField(max_digits=3, decimal_places=2, null=True, blank=True)
    review_count = models.IntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'places'

    def __str__(self):
        return self.name


class RefreshJob(models.Model):
    """
    Durable queue row for DatabaseQueue.
    Completed jobs are deleted; failed ones stay for inspection.
    """
    PENDING = 'pending'
    ACTIVE = 'active'
    FAILED = 'failed'
    STATUS = [
        (PENDING, 'Pending'),
        (ACTIVE, 'Active'),
        (FAILED, 'Failed'),
    ]

    topic = models.CharField(max_length=100)
    dedup_key = models.CharField(max_length=200)
    payload = models.JSONField(default=dict)
    status = models.CharField(max_length=20, choices=STATUS, default=PENDING)

    attempts_made = models.IntegerField(default=0)
    max_attempts = models.IntegerField(default=3)
    backoff_delay = models.FloatField(default=1.0)
    available_at = models.DateTimeField()
    last_error = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    finished_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'refresh_jobs'
        constraints = [
            # At most one pending-or-active job per dedup key
            models.UniqueConstraint(
                fields=['dedup_key'],
                condition=Q(status__in=['pending', 'active']),
                name='refresh_jobs_open_dedup_key',
            ),
        ]
        indexes = [
            models.Index(fields=['topic', 'status', 'available_at'],
                         name='refresh_jobs_claim_idx'),
        ]

    def __str__(self):
        return f"RefreshJob({self.dedup_key}): {self.status}"
