# ftp_access/monitoring/context.py
"""
Context helpers using contextvars for session/operation propagation.
"""
import contextvars

session_id_var = contextvars.ContextVar("session_id", default=None)
operation_var = contextvars.ContextVar("operation", default=None)
remote_path_var = contextvars.ContextVar("remote_path", default=None)

def set_session_context(session_id=None, operation=None, remote_path=None):
    tokens = []
    if session_id is not None:
        tokens.append((session_id_var, session_id_var.set(session_id)))
    if operation is not None:
        tokens.append((operation_var, operation_var.set(operation)))
    if remote_path is not None:
        tokens.append((remote_path_var, remote_path_var.set(remote_path)))
    return tokens

def reset_session_context(tokens):
    for var, token in reversed(tokens):
        var.reset(token)

def get_session_context():
    return {
        "session_id": session_id_var.get(),
        "operation": operation_var.get(),
        "remote_path": remote_path_var.get(),
    }
