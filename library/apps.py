from django.apps import AppConfig


class LibraryAppConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "library"
    verbose_name = "ROM library"
