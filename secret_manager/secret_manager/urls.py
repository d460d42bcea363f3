"""
URL configuration for secret_manager project.

The `urlpatterns` list routes URLs to views. For more information please see:
    https://docs.djangoproject.com/en/5.2/topics/http/urls/
"""
from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/v2/', include('secret_store.urls')),
    path('', include('django_prometheus.urls')),  # /metrics endpoint
]
