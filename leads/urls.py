from django.urls import path
from . import views

urlpatterns = [
    path('upload', views.upload_database, name='upload_database'),
    path('databases', views.list_databases, name='list_databases'),
    path('set-active-db', views.set_active_database, name='set_active_database'),
    path('get-row', views.get_row, name='get_row'),
]
