from django.apps import AppConfig


####################################################################
#
class ListmailConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "listmail"
    verbose_name = "Mailing list ingestion"

    ####################################################################
    #
    def ready(self):
        # make sure the huey tasks are registered.
        import listmail.tasks  # noqa: F401
