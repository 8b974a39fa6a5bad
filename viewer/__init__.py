"""Sequential document viewer and consent gate."""

from .client import CatalogFetchError, ConsentDeliveryError, DocumentFetchError, ViewerApiClient
from .controller import LayoutProbe, ViewerController
from .debounce import Debouncer
from .models import Catalog, CatalogShapeError, Document, Group, document_id, isoformat_utc
from .outbox import ConsentDelivery, ConsentOutbox
from .render import DocumentLoadError, PdfRenderer, RenderedDocument
from .session import (
    ConsentEvent,
    ConsentGateClosed,
    ControlState,
    Phase,
    ViewerError,
    ViewerSession,
)
from .visibility import (
    ContainerGeometry,
    ViewportGeometry,
    VisibilityPolicy,
    compute_viewed,
    load_visibility_policy,
)

__all__ = [
    "Catalog",
    "CatalogFetchError",
    "CatalogShapeError",
    "ConsentDelivery",
    "ConsentDeliveryError",
    "ConsentEvent",
    "ConsentGateClosed",
    "ConsentOutbox",
    "ContainerGeometry",
    "ControlState",
    "Debouncer",
    "Document",
    "DocumentFetchError",
    "DocumentLoadError",
    "Group",
    "LayoutProbe",
    "PdfRenderer",
    "Phase",
    "RenderedDocument",
    "ViewerApiClient",
    "ViewerController",
    "ViewerError",
    "ViewerSession",
    "ViewportGeometry",
    "VisibilityPolicy",
    "compute_viewed",
    "document_id",
    "isoformat_utc",
    "load_visibility_policy",
]
