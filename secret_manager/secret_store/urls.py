from django.urls import path
from . import views

urlpatterns = [
    path('workspace/<uuid:workspace_id>/secrets/', views.workspace_secrets, name='workspace_secrets'),
]
