from fastapi import APIRouter, Depends
from aurelia.api import version_prefix
from aurelia.api.dependencies import require_admin
from aurelia.background_workers.routes import jobs_admin_router
from aurelia.common.routes import home_router
from aurelia.orders.routes import orders_admin_router, orders_router
from aurelia.payments.routes import payments_admin_router, payments_router
from aurelia.payments.webhooks import webhooks_router


public_routers = APIRouter(prefix=version_prefix)

public_routers.include_router(orders_router, prefix="/orders", tags=["orders"])
public_routers.include_router(payments_router, prefix="/payments", tags=["payments"])
public_routers.include_router(webhooks_router, prefix="/webhooks", tags=["webhooks"])
public_routers.include_router(home_router, tags=["home"])

#--------------------------------------------------------------------------------------------------------

admin_routers = APIRouter(prefix=f"{version_prefix}/admin", dependencies=[Depends(require_admin)])

admin_routers.include_router(payments_admin_router, prefix="/payments", tags=["payments-admin"])
admin_routers.include_router(orders_admin_router, prefix="/orders", tags=["orders-admin"])
admin_routers.include_router(jobs_admin_router, prefix="/jobs", tags=["jobs-admin"])
