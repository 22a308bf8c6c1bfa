"""
Storefront OMS URL Configuration

URL Routing:
    /admin/          → Django admin panel (coupons, shipping rules, returns)
    /api/v1/         → Payment, coupon, shipping, invoice and return APIs
    /api/schema/     → OpenAPI schema
"""

from django.contrib import admin
from django.urls import path, include
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/v1/', include('fulfillment.urls')),
    path('api/schema/', SpectacularAPIView.as_view(), name='schema'),
    path('api/docs/', SpectacularSwaggerView.as_view(url_name='schema'), name='swagger-ui'),
]
