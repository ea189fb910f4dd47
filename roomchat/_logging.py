# =============================================================================
# roomchat -- Package Logger
# =============================================================================

import logging

logger = logging.getLogger("roomchat")
