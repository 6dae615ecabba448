from fastapi.responses import JSONResponse

# HTTP status for each service failure code
FAILURE_STATUS = {
    "not_configured": 503,
    "transient": 503,
    "provider_error": 502,
    "unmapped_status": 502,
    "verification_timeout": 504,
    "no_customer": 400,
    "no_subscription": 404,
    "already_subscribed": 400,
    "has_free_access": 400,
    "user_not_found": 404,
    "invalid_code": 400,
    "already_active": 400,
    "session_not_owned": 403,
}


def error_response(error_code, status=400, message="An error occurred", data=None):
    return JSONResponse(
        status_code=status,
        content={
            "ok": False,
            "data": data if data is not None else {},
            "error": error_code,
            "message": message,
        }
    )


def failure_code(err) -> str:
    error = err.error
    return getattr(error, "value", error)


def failure_response(err, data=None):
    """error_response for an Err result, with the status its code maps to."""
    code = failure_code(err)
    return error_response(
        code,
        status=FAILURE_STATUS.get(code, 400),
        message=err.message or "An error occurred",
        data=data,
    )
