import logging
import json
import re


class CorrelationIdFilter(logging.Filter):
    """
    Stamps every record with the request/task correlation id.
    """
    def filter(self, record):
        from apps.core.middleware import get_correlation_id

        if not hasattr(record, "correlation_id"):
            record.correlation_id = get_correlation_id() or "N/A"
        return True


class GDPRJsonFormatter(logging.Formatter):
    """
    Structured JSON logging with masking of bank details, OTPs and phones.
    """

    SENSITIVE_PATTERNS = {
        r'"password":\s*".*?"': '"password": "***MASKED***"',
        r'"token":\s*".*?"': '"token": "***MASKED***"',
        r'"otp":\s*".*?"': '"otp": "***MASKED***"',
        r'"iban":\s*"([A-Z]{2})[A-Z0-9 ]+?([A-Z0-9]{4})"': r'"iban": "\1******\2"',
        r'"phone":\s*"\+?(\d{2,4})\d{6,}"': r'"phone": "\1******"',
        r'\b([A-Z]{2}\d{2})[A-Z0-9]{8,26}([A-Z0-9]{4})\b': r'\1******\2',
    }

    SENSITIVE_KEYS = {
        'password', 'token', 'access', 'refresh', 'secret', 'key',
        'otp', 'iban', 'bic', 'phone',
    }

    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "path": record.pathname,
            "line_no": record.lineno,
            "correlation_id": getattr(record, "correlation_id", "N/A"),
        }

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "metadata") and isinstance(record.metadata, dict):
            log_record["metadata"] = self._recursive_scrub(record.metadata)

        try:
            json_output = json.dumps(log_record, default=str)
        except (TypeError, ValueError):
            log_record["metadata"] = str(getattr(record, "metadata", ""))
            json_output = json.dumps(log_record, default=str)

        for pattern, replacement in self.SENSITIVE_PATTERNS.items():
            json_output = re.sub(pattern, replacement, json_output)

        return json_output

    def _recursive_scrub(self, data, depth=0):
        if depth > 10:
            return "[MAX_DEPTH_EXCEEDED]"

        if isinstance(data, dict):
            return {
                k: ("***MASKED***" if str(k).lower() in self.SENSITIVE_KEYS and isinstance(v, (str, int))
                    else self._recursive_scrub(v, depth + 1))
                for k, v in data.items()
            }
        elif isinstance(data, list):
            return [self._recursive_scrub(i, depth + 1) for i in data]

        return data
