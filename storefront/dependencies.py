from fastapi import Depends, Request

from storefront.services.settings_service import TableInspector


class TablesMissingError(Exception):
    def __init__(self, missing: list[str]) -> None:
        super().__init__('Missing tables: ' + ', '.join(missing))
        self.missing = missing


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None


def get_request_id(request: Request) -> str | None:
    return getattr(request.state, 'request_id', None)


def get_table_inspector(request: Request) -> TableInspector:
    return request.app.state.table_inspector


def require_tables(*names: str):
    def _check(inspector: TableInspector = Depends(get_table_inspector)) -> None:
        missing = inspector.missing_tables(names)
        if missing:
            raise TablesMissingError(missing)

    return _check
