def list_response(
    items: list, limit: int, offset: int, *, total: int | None = None
) -> dict:
    return {
        "items": items,
        "count": len(items),
        "limit": limit,
        "offset": offset,
        "total": total if total is not None else len(items),
    }


class ListResponseMixin:
    """Adds ``list_response`` to a service exposing ``list(db, ..., limit, offset)``.

    ``list`` returns ``(items, total)``.
    """

    def list_response(self, db, *args, **kwargs) -> dict:
        if "limit" in kwargs and "offset" in kwargs:
            limit = kwargs["limit"]
            offset = kwargs["offset"]
            items, total = self.list(db, *args, **kwargs)
        else:
            if len(args) < 2:
                raise ValueError("limit and offset are required for list responses")
            *list_args, limit, offset = args
            items, total = self.list(db, *list_args, limit=limit, offset=offset, **kwargs)
        return list_response(items, limit, offset, total=total)
