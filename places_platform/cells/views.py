# cells/views.py
from asgiref.sync import async_to_sync
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated
from sync.store import CellStore
from .models import GridCell, RefreshJob


def _cell_status(cell):
    return {
        'cell_id': cell.id,
        'level': cell.level,
        'center_lat': cell.center_lat,
        'center_lng': cell.center_lng,
        'query_radius_m': cell.query_radius_m,
        'last_fetched_at': cell.last_fetched_at,
        'result_count_last_fetch': cell.result_count_last_fetch,
        'hit_cap_last_fetch': cell.hit_cap_last_fetch,
    }


class EntityCellsView(APIView):
    """Cells covering one entity, with their freshness."""
    permission_classes = [IsAuthenticated]

    def get(self, request, entity_id):
        cells = async_to_sync(CellStore().cells_for_entity)(entity_id)

        results = [_cell_status(c) for c in cells]
        return Response({
            'entity_id': entity_id,
            'total_cells': len(results),
            'never_fetched': sum(1 for c in results if c['last_fetched_at'] is None),
            'cells': results,
        })


class CellStatusView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, cell_id):
        try:
            cell = GridCell.objects.get(id=cell_id)
        except GridCell.DoesNotExist:
            return Response({'error': 'Not found'}, status=404)

        data = _cell_status(cell)
        data['refresh_jobs'] = list(
            RefreshJob.objects.filter(
                payload__cell_id=cell_id
            ).order_by('-created_at').values(
                'id', 'status', 'attempts_made', 'last_error', 'finished_at'
            )[:10]
        )
        return Response(data)


class RefreshJobListView(APIView):
    """
    Queue rows by status. Defaults to failed, the jobs that ran out of
    attempts and are kept for inspection.
    """
    permission_classes = [IsAuthenticated]

    def get(self, request):
        status = request.query_params.get('status', RefreshJob.FAILED)
        if status not in dict(RefreshJob.STATUS):
            return Response({'error': f'unknown status: {status}'}, status=400)

        jobs = RefreshJob.objects.filter(status=status).order_by('-updated_at')[:100]
        return Response([{
            'id': j.id,
            'topic': j.topic,
            'dedup_key': j.dedup_key,
            'cell_id': j.payload.get('cell_id'),
            'status': j.status,
            'attempts_made': j.attempts_made,
            'max_attempts': j.max_attempts,
            'last_error': j.last_error,
            'available_at': j.available_at,
            'finished_at': j.finished_at,
        } for j in jobs])
