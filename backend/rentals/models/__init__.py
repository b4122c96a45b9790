from .tenancy import Store
from .catalog import Product, PricingTier, ProductRate, ProductUnit
from .customers import Customer
from .reservations import Reservation, ReservationItem, ReservationItemUnit, ReservationActivity
from .payments import Payment

__all__ = [
    'Store',
    'Product', 'PricingTier', 'ProductRate', 'ProductUnit',
    'Customer',
    'Reservation', 'ReservationItem', 'ReservationItemUnit', 'ReservationActivity',
    'Payment',
]
