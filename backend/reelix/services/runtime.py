"""Process-wide service instances shared by the API and the app lifespan."""

from reelix.config import settings
from reelix.services.assignment_store import TitleAssignmentStore
from reelix.services.disk_catalog import DiskCatalog
from reelix.services.event_broadcaster import EventBroadcaster
from reelix.services.progress_bus import ProgressEventBus
from reelix.services.rip_scheduler import RipJobScheduler
from reelix.services.upload_queue import UploadQueue

event_bus = ProgressEventBus(queue_size=settings.event_queue_size)
broadcaster = EventBroadcaster(event_bus)

disk_catalog = DiskCatalog(
    broadcaster,
    scan_timeout=settings.scan_timeout_seconds,
    min_title_length=settings.min_title_length_seconds,
)

assignment_store = TitleAssignmentStore(broadcaster)

upload_queue = UploadQueue(broadcaster, history_capacity=settings.job_history_capacity)

rip_scheduler = RipJobScheduler(
    disk_catalog,
    broadcaster,
    max_concurrent=settings.max_concurrent_rips,
    history_capacity=settings.job_history_capacity,
    termination_timeout=settings.termination_timeout_seconds,
    diagnostic_lines=settings.diagnostic_buffer_lines,
    min_title_length=settings.min_title_length_seconds,
    uploader=upload_queue,
)
