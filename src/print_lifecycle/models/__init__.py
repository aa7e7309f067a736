from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


# Import all models so that Base.metadata.create_all picks them up.
from print_lifecycle.models.user import User  # noqa: E402, F401
from print_lifecycle.models.print_job import PrintJob  # noqa: E402, F401
from print_lifecycle.models.notification import Notification  # noqa: E402, F401
from print_lifecycle.models.payment import Payment  # noqa: E402, F401
from print_lifecycle.models.queue_entry import QueueEntry  # noqa: E402, F401
