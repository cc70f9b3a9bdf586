# cells/urls.py
from django.urls import path
from . import views

urlpatterns = [
    path('entities/<str:entity_id>/cells/', views.EntityCellsView.as_view()),
    path('cells/<str:cell_id>/', views.CellStatusView.as_view()),
    path('refresh-jobs/', views.RefreshJobListView.as_view()),
]
