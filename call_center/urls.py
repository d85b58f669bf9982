from django.conf import settings
from django.urls import include, path, re_path
from django.views.static import serve

urlpatterns = [
    path('api/', include('leads.urls')),
    path('api/', include('crm.urls')),
    re_path(r'^uploads/(?P<path>[^/]+)$', serve, {'document_root': settings.UPLOAD_DIR}),
]
