from celery import Celery

from leadops.core.config import get_settings

settings = get_settings()

celery_app = Celery("leadops", broker=settings.redis_url, backend=settings.redis_url, include=["leadops.jobs"])
celery_app.conf.timezone = "UTC"


@celery_app.on_after_configure.connect
def _register_periodic_jobs(sender: Celery, **kwargs: object) -> None:
    from leadops.jobs import register_periodic_jobs

    register_periodic_jobs(sender)

