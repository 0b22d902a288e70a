from .common import *  # noqa
from .warehouse import *  # noqa
from .inventory import *  # noqa
from .orders import *  # noqa
from .auth import *  # noqa
from .iam_tokens import *  # noqa
from .security_audit import *  # noqa
from .compliance import *  # noqa
from .analytics import *  # noqa

# Domain event tables (transactional outbox + webhook subscriptions)
from app.events.outbox import *  # noqa
from app.events.subscriptions import *  # noqa
