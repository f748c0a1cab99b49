from ftp_access.monitoring.logger import log
import traceback


def record_error(component: str, function: str, message: str, details: dict = None, exc: BaseException = None, session_id: str = None, severity: str = "ERROR"):
    try:
        stacktrace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)) if exc is not None else None
        payload = dict(details or {})
        if exc is not None:
            payload["error_type"] = type(exc).__name__
            code = getattr(exc, "code", None)
            if code is not None:
                payload["reply_code"] = code
        log(severity, message, component=component, session_id=session_id, function=function, details=payload, stacktrace=stacktrace)
    except Exception as e:
        # Never let error reporting mask the error being reported
        log("ERROR", f"Failed to record error for {function}: {e}", component="errors", session_id=session_id)
