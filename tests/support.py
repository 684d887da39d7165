from __future__ import annotations

from decimal import Decimal

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storefront.models import Base, Order, OrderItem, OrderStatus, Product, ProductVariant
from storefront.services.cj_client import CjApiError


def make_engine():
    engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)

    # pysqlite needs these for SAVEPOINT to nest inside the outer transaction.
    @event.listens_for(engine, 'connect')
    def _connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _begin(conn):
        conn.exec_driver_sql('BEGIN')

    Base.metadata.create_all(engine)
    return engine


def make_session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def add_product(db, *, title='Linen Shirt', cj_product_id='PID-1', price='10.00', stock=20, images=None, vids=('VID-1',)):
    product = Product(
        title=title,
        slug=title.lower().replace(' ', '-') + '-' + cj_product_id.lower(),
        price=Decimal(price),
        stock=stock,
        images=images or [],
        cj_product_id=cj_product_id,
        is_active=True,
    )
    db.add(product)
    db.flush()
    for idx, vid in enumerate(vids):
        db.add(ProductVariant(product_id=product.id, option_name='Size', option_value=f'S{idx}', cj_sku=f'SKU-{vid}', cj_variant_id=vid, stock=5))
    db.flush()
    return product


def add_order(db, *, order_id=None, status=OrderStatus.PAID, items=(), shipping=True, **fields):
    order = Order(
        id=order_id,
        order_number=fields.pop('order_number', 'SO-1001'),
        email='buyer@example.com',
        total_amount=Decimal('49.00'),
        status=status,
        **fields,
    )
    if shipping:
        order.shipping_name = 'Sara Ahmed'
        order.shipping_phone = '+966500000000'
        order.shipping_country_code = 'SA'
        order.shipping_city = 'Riyadh'
        order.shipping_province = 'Riyadh'
        order.shipping_address1 = 'King Fahd Rd 1'
        order.shipping_zip = '12211'
    db.add(order)
    db.flush()
    for product, variant_id, quantity in items:
        db.add(OrderItem(order_id=order.id, product_id=product.id, variant_id=variant_id, quantity=quantity, price=Decimal('10.00')))
    db.flush()
    return order


class FakeCjClient:
    """Stands in for ``CjClient``; records calls and replays canned responses."""

    def __init__(self, *, pages=None, products=None, create_response=None, create_error=None, tracking=None, freight=None):
        self.pages = pages or {}
        self.products = products or {}
        self.create_response = create_response if create_response is not None else {'result': True, 'data': {'orderId': 'CJ-1'}}
        self.create_error = create_error
        self.tracking = tracking or {}
        self.freight = freight or []
        self.calls: list[tuple] = []

    def is_configured(self) -> bool:
        return True

    def list_products_page(self, *, keyword, page_num=1, page_size=20):
        self.calls.append(('list', keyword, page_num))
        return list(self.pages.get((keyword, page_num), []))

    def query_product(self, pid):
        self.calls.append(('query', pid))
        return self.products.get(pid)

    def list_variants(self, pid):
        self.calls.append(('variants', pid))
        return []

    def create_order(self, payload):
        self.calls.append(('create_order', payload))
        if self.create_error:
            raise CjApiError(self.create_error, status=500)
        return self.create_response

    def get_tracking_info(self, order_no):
        self.calls.append(('tracking', order_no))
        value = self.tracking.get(order_no)
        if isinstance(value, Exception):
            raise value
        return value or {'result': True, 'data': {}}

    def freight_calculate(self, req):
        self.calls.append(('freight', req))
        return list(self.freight)

    def clear_token(self):
        self.calls.append(('clear_token',))


def make_app(session_factory, engine, cj_client, *, admin: bool = True):
    """Application wired to the in-memory database and a fake CJ client."""
    from storefront.auth import Principal, require_admin
    from storefront.db import get_db
    from storefront.dependencies import get_table_inspector
    from storefront.main import create_app
    from storefront.services.provider_factory import get_cj_client
    from storefront.services.settings_service import TableInspector

    app = create_app()

    def _db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    inspector = TableInspector(engine)
    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_cj_client] = lambda: cj_client
    app.dependency_overrides[get_table_inspector] = lambda: inspector
    if admin:
        app.dependency_overrides[require_admin] = lambda: Principal(id=1, email='admin@example.com', active=True)
    return app
