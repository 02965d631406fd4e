"""Error responses that keep internal details out of API output."""

import logging

from fastapi import HTTPException


def safe_error_response(
    logger_instance: logging.Logger,
    error: Exception,
    user_message: str,
    status_code: int = 500,
    log_level: str = "error",
) -> None:
    """Log full error details server-side and raise generic HTTPException for user.

    Args:
        logger_instance: Logger instance to use for server-side logging
        error: The exception that was caught
        user_message: Generic message to show to the user
        status_code: HTTP status code for the response (default: 500)
        log_level: Logging level to use (error, warning, info) (default: error)

    Raises:
        HTTPException: With the user_message as detail
    """
    log_method = getattr(logger_instance, log_level, logger_instance.error)
    log_method(f"{user_message}: {type(error).__name__}", exc_info=True)

    raise HTTPException(status_code=status_code, detail=user_message)
