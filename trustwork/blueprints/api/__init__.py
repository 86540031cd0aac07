from flask import Blueprint

api_bp = Blueprint("api", __name__)

# Import route modules to register their endpoints
from . import assignments    # noqa: E402,F401
from . import applications   # noqa: E402,F401
from . import skill_tests    # noqa: E402,F401
from . import milestones     # noqa: E402,F401
from . import escrow         # noqa: E402,F401
from . import disputes       # noqa: E402,F401
from . import reviews        # noqa: E402,F401
