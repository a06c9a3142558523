from __future__ import annotations

import contextvars

# Correlation id for the current upload, blank outside a request
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("cifar_request_id", default="")
