"""
Error taxonomy for automation endpoints.

Every error carries the HTTP status the API should answer with. Routes raise
these and the handlers registered in create_app() turn them into
{"success": false, "error": ...} responses.
"""
from flask import jsonify
from werkzeug.exceptions import HTTPException


class AutomationError(Exception):
    """Base class for errors surfaced to API callers."""
    status_code = 500

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {'success': False, 'error': self.message}


class ValidationError(AutomationError):
    """Missing or malformed required input."""
    status_code = 400


class NotFoundError(AutomationError):
    """Referenced rule, lead, cadence or template does not exist."""
    status_code = 404


class UpstreamError(AutomationError):
    """Lead Store or a dispatch collaborator is unreachable or failing."""
    status_code = 500


class PartialExecutionError(AutomationError):
    """
    One action in an action list failed while its siblings ran.

    Never propagated out of a run: the executor records it on the per-action
    outcome and the run still reports success.
    """
    status_code = 200

    def __init__(self, message, action_type=None):
        super().__init__(message)
        self.action_type = action_type


def register_error_handlers(app):
    """Render AutomationError subclasses and stray exceptions as JSON."""

    @app.errorhandler(AutomationError)
    def handle_automation_error(error):
        if error.status_code >= 500:
            app.logger.error("Automation request failed: %s", error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def handle_not_found(error):
        return jsonify({'success': False, 'error': 'Not found'}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(error):
        return jsonify({'success': False, 'error': 'Method not allowed'}), 405

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        if isinstance(error, HTTPException):
            return jsonify({'success': False, 'error': error.description}), error.code
        app.logger.error("Unhandled error: %s", error, exc_info=True)
        return jsonify({'success': False, 'error': str(error) or error.__class__.__name__}), 500
