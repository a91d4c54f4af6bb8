from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.auth import get_actor_principal_id, get_client_ip
from app.db import get_db
from app.errors import PurchaseOrderError
from app.schemas import BulkDeleteBody, PurchaseOrderCreateBody, PurchaseOrderUpdateBody, StatusChangeBody
from app.services.audit_service import list_status_history, log_audit
from app.services.purchase_order_query_service import (
    PurchaseOrderFilters,
    build_order_payloads,
    export_purchase_orders_csv,
    get_purchase_order_detail,
    list_purchase_orders,
    purchase_order_stats,
)
from app.services.purchase_order_service import (
    bulk_soft_delete_purchase_orders,
    change_purchase_order_status,
    create_purchase_order,
    duplicate_purchase_order,
    get_purchase_order,
    soft_delete_purchase_order,
    update_purchase_order,
)

router = APIRouter(prefix='/api/purchase-orders', tags=['purchase-orders'])


def _envelope(message: str, data=None, meta: dict | None = None) -> dict:
    body = {'success': True, 'message': message, 'data': data}
    if meta is not None:
        body['meta'] = meta
    return body


def _http_error(exc: PurchaseOrderError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.as_detail())


def _parse_int(raw: str | None, default: int | None) -> int | None:
    value = (raw or '').strip()
    try:
        return int(value)
    except ValueError:
        return default


def _filters_from_query(request: Request) -> PurchaseOrderFilters:
    params = request.query_params
    return PurchaseOrderFilters(
        status=params.get('status'),
        vendor_ref=params.get('vendor') or params.get('vendorRef'),
        priority=params.get('priority'),
        start_date=params.get('startDate'),
        end_date=params.get('endDate'),
        search=params.get('search'),
        delivery_status=params.get('deliveryStatus'),
    )


@router.post('', status_code=201)
@router.post('/', status_code=201, include_in_schema=False)
def create_order(
    body: PurchaseOrderCreateBody,
    request: Request,
    actor_id: int | None = Depends(get_actor_principal_id),
    db: Session = Depends(get_db),
):
    try:
        po = create_purchase_order(db, data=body.to_input(), actor_principal_id=actor_id)
    except PurchaseOrderError as exc:
        raise _http_error(exc) from exc

    log_audit(
        db,
        actor_principal_id=actor_id,
        action='PURCHASE_ORDER_CREATED',
        purchase_order_id=po.id,
        ip=get_client_ip(request),
        metadata={'order_number': po.order_number, 'total_amount': str(po.total_amount)},
    )
    db.commit()
    return _envelope('Purchase order created successfully', build_order_payloads(db, [po])[0])


@router.get('')
@router.get('/', include_in_schema=False)
def list_orders(request: Request, db: Session = Depends(get_db)):
    params = request.query_params
    try:
        items, meta = list_purchase_orders(
            db,
            filters=_filters_from_query(request),
            sort_by=params.get('sortBy', 'createdAt'),
            sort_order=params.get('sortOrder', 'desc'),
            page=_parse_int(params.get('page'), 1),
            limit=_parse_int(params.get('limit'), None),
        )
    except PurchaseOrderError as exc:
        raise _http_error(exc) from exc
    return _envelope('Purchase orders retrieved successfully', items, meta)


@router.get('/stats')
def order_stats(db: Session = Depends(get_db)):
    return _envelope('Purchase order statistics retrieved successfully', purchase_order_stats(db))


@router.get('/export')
def export_orders(
    request: Request,
    actor_id: int | None = Depends(get_actor_principal_id),
    db: Session = Depends(get_db),
):
    try:
        content, row_count = export_purchase_orders_csv(db, filters=_filters_from_query(request))
    except PurchaseOrderError as exc:
        raise _http_error(exc) from exc

    log_audit(
        db,
        actor_principal_id=actor_id,
        action='PURCHASE_ORDERS_EXPORTED_CSV',
        purchase_order_id=None,
        ip=get_client_ip(request),
        metadata={'rows': row_count},
    )
    db.commit()

    stamp = datetime.now(tz=timezone.utc).strftime('%Y%m%d%H%M%S')
    return StreamingResponse(
        iter([content]),
        media_type='text/csv',
        headers={'Content-Disposition': f'attachment; filename="purchase-orders-{stamp}.csv"'},
    )


@router.post('/bulk-delete')
def bulk_delete_orders(
    body: BulkDeleteBody,
    request: Request,
    actor_id: int | None = Depends(get_actor_principal_id),
    db: Session = Depends(get_db),
):
    try:
        deleted = bulk_soft_delete_purchase_orders(db, purchase_order_ids=body.order_ids, actor_principal_id=actor_id)
    except PurchaseOrderError as exc:
        raise _http_error(exc) from exc

    log_audit(
        db,
        actor_principal_id=actor_id,
        action='PURCHASE_ORDERS_BULK_DELETED',
        purchase_order_id=None,
        ip=get_client_ip(request),
        metadata={'requested_ids': body.order_ids, 'deleted': deleted},
    )
    db.commit()
    return _envelope(f'{deleted} purchase order(s) deleted successfully', {'deletedCount': deleted})


@router.get('/{purchase_order_id}')
def get_order(purchase_order_id: int, db: Session = Depends(get_db)):
    try:
        detail = get_purchase_order_detail(db, purchase_order_id=purchase_order_id)
    except PurchaseOrderError as exc:
        raise _http_error(exc) from exc
    return _envelope('Purchase order retrieved successfully', detail)


@router.get('/{purchase_order_id}/history')
def get_order_history(purchase_order_id: int, db: Session = Depends(get_db)):
    try:
        get_purchase_order(db, purchase_order_id=purchase_order_id, include_deleted=True)
    except PurchaseOrderError as exc:
        raise _http_error(exc) from exc
    return _envelope(
        'Purchase order status history retrieved successfully',
        list_status_history(db, purchase_order_id=purchase_order_id),
    )


@router.put('/{purchase_order_id}')
def update_order(
    purchase_order_id: int,
    request: Request,
    body: PurchaseOrderUpdateBody,
    actor_id: int | None = Depends(get_actor_principal_id),
    db: Session = Depends(get_db),
):
    try:
        changes = body.to_changes()
        po = update_purchase_order(
            db,
            purchase_order_id=purchase_order_id,
            changes=changes,
            actor_principal_id=actor_id,
        )
    except PurchaseOrderError as exc:
        raise _http_error(exc) from exc

    log_audit(
        db,
        actor_principal_id=actor_id,
        action='PURCHASE_ORDER_UPDATED',
        purchase_order_id=po.id,
        ip=get_client_ip(request),
        metadata={'fields': sorted(changes)},
    )
    db.commit()
    return _envelope('Purchase order updated successfully', build_order_payloads(db, [po])[0])


@router.delete('/{purchase_order_id}')
def delete_order(
    purchase_order_id: int,
    request: Request,
    actor_id: int | None = Depends(get_actor_principal_id),
    db: Session = Depends(get_db),
):
    try:
        po = soft_delete_purchase_order(db, purchase_order_id=purchase_order_id, actor_principal_id=actor_id)
    except PurchaseOrderError as exc:
        raise _http_error(exc) from exc

    log_audit(
        db,
        actor_principal_id=actor_id,
        action='PURCHASE_ORDER_DELETED',
        purchase_order_id=po.id,
        ip=get_client_ip(request),
        metadata={'order_number': po.order_number},
    )
    db.commit()
    return _envelope('Purchase order deleted successfully')


@router.patch('/{purchase_order_id}/status')
def change_order_status(
    purchase_order_id: int,
    body: StatusChangeBody,
    request: Request,
    actor_id: int | None = Depends(get_actor_principal_id),
    db: Session = Depends(get_db),
):
    try:
        po = change_purchase_order_status(
            db,
            purchase_order_id=purchase_order_id,
            new_status=body.status,
            cancellation_reason=body.cancellation_reason,
            actor_principal_id=actor_id,
            ip=get_client_ip(request),
        )
    except PurchaseOrderError as exc:
        raise _http_error(exc) from exc

    db.commit()
    return _envelope(f'Purchase order status updated to {po.status.value}', build_order_payloads(db, [po])[0])


@router.post('/{purchase_order_id}/duplicate', status_code=201)
def duplicate_order(
    purchase_order_id: int,
    request: Request,
    actor_id: int | None = Depends(get_actor_principal_id),
    db: Session = Depends(get_db),
):
    try:
        po = duplicate_purchase_order(db, purchase_order_id=purchase_order_id, actor_principal_id=actor_id)
    except PurchaseOrderError as exc:
        raise _http_error(exc) from exc

    log_audit(
        db,
        actor_principal_id=actor_id,
        action='PURCHASE_ORDER_DUPLICATED',
        purchase_order_id=po.id,
        ip=get_client_ip(request),
        metadata={'source_id': purchase_order_id, 'order_number': po.order_number},
    )
    db.commit()
    return _envelope('Purchase order duplicated successfully', build_order_payloads(db, [po])[0])
