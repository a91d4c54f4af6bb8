from fastapi import Request


def get_actor_principal_id(request: Request) -> int | None:
    # Set by the identity middleware; None means an anonymous caller.
    return getattr(request.state, 'principal_id', None)


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    return request.client.host if request.client else None
