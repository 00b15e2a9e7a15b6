from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView
from rest_framework.routers import DefaultRouter

from finance.api import views

router = DefaultRouter()
router.register('projects', views.ProjectViewSet, basename='project')
router.register('invoices', views.InvoiceViewSet, basename='invoice')
router.register('expenses', views.ExpenseViewSet, basename='expense')
router.register('budget-requests', views.BudgetRequestViewSet, basename='budget-request')
router.register('activity-logs', views.ActivityLogViewSet, basename='activity-log')

urlpatterns = [
    path('auth/token/', views.CustomTokenObtainPairView.as_view(), name='token_obtain_pair'),
    path('auth/refresh/', views.CustomTokenRefreshView.as_view(), name='token_refresh'),
    path('auth/me/', views.MeView.as_view(), name='me'),
    path('dashboard/', views.DashboardView.as_view(), name='dashboard'),
    path('schema/', SpectacularAPIView.as_view(), name='schema'),
    path('docs/', SpectacularSwaggerView.as_view(url_name='schema'), name='swagger-ui'),
    path('', include(router.urls)),
]
