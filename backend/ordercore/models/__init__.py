from .inventory import StockVariant, StockMovement
from .parties import Customer, Vendor, VendorLedgerEntry, Rider, RiderBalanceLog
from .leads import Lead
from .orders import Order, OrderItem, OrderActivity, OrderPayment
from .dispatch import Manifest, ManifestItem, RiderSettlement
from .documents import ReturnSettlement, ArchiveRecord, DocumentSequence

__all__ = [
    'StockVariant', 'StockMovement',
    'Customer', 'Vendor', 'VendorLedgerEntry', 'Rider', 'RiderBalanceLog',
    'Lead',
    'Order', 'OrderItem', 'OrderActivity', 'OrderPayment',
    'Manifest', 'ManifestItem', 'RiderSettlement',
    'ReturnSettlement', 'ArchiveRecord', 'DocumentSequence',
]
