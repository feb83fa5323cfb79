import logging
from motor.motor_asyncio import AsyncIOMotorClient
from procurement.config import settings
from procurement.repositories.audit import AuditRepository
from procurement.repositories.costing import CostTransactionRepository, PriceVarianceRepository
from procurement.repositories.product import ProductRepository
from procurement.repositories.purchase_order import PurchaseOrderRepository
from procurement.repositories.receiving_queue import ReceivingQueueRepository
from procurement.repositories.storage import MongoStorage
from procurement.models.audit import AuditEvent
from procurement.models.costing import CostUpdateTransaction, PriceVarianceRecord
from procurement.models.product import Product
from procurement.models.purchase_order import PurchaseOrder
from procurement.models.receiving import ReceivingQueueEntry

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None

    # Repositories
    purchase_orders: PurchaseOrderRepository = None
    products: ProductRepository = None
    price_variances: PriceVarianceRepository = None
    cost_transactions: CostTransactionRepository = None
    receiving_queue: ReceivingQueueRepository = None
    audit: AuditRepository = None

    storage: MongoStorage = None

    def connect(self):
        """Initialize database connection and repositories."""
        self.client = AsyncIOMotorClient(settings.MONGODB_URL)
        db = self.client[settings.DB_NAME]

        # Initialize repositories with their respective collections and models
        self.purchase_orders = PurchaseOrderRepository(db.purchase_orders, PurchaseOrder)
        self.products = ProductRepository(db.products, Product)
        self.price_variances = PriceVarianceRepository(db.price_variances, PriceVarianceRecord)
        self.cost_transactions = CostTransactionRepository(db.cost_update_transactions, CostUpdateTransaction)
        self.receiving_queue = ReceivingQueueRepository(db.receiving_queue, ReceivingQueueEntry)
        self.audit = AuditRepository(db.purchase_order_audit_log, AuditEvent)

        self.storage = MongoStorage(
            purchase_orders=self.purchase_orders,
            products=self.products,
            price_variances=self.price_variances,
            cost_transactions=self.cost_transactions,
            receiving_queue=self.receiving_queue,
        )

        logger.info(f"Connected to MongoDB database {settings.DB_NAME}")

    def close(self):
        """Close database connection."""
        if self.client:
            self.client.close()
            logger.info("Disconnected from MongoDB")

db = Database()

async def get_db() -> Database:
    """Dependency for FastAPI."""
    return db
