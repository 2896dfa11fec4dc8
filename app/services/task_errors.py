from __future__ import annotations


class TaskError(Exception):
    """Expected, caller-facing guard failure raised by the task services."""

    code = 'TASK_ERROR'
    status_code = 400

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_detail(self) -> dict:
        return {'code': self.code, 'message': self.message, **self.details}


class NotFound(TaskError):
    code = 'NOT_FOUND'
    status_code = 404


class InvalidTransition(TaskError):
    code = 'INVALID_TRANSITION'
    status_code = 409


class LocationRequired(TaskError):
    code = 'LOCATION_REQUIRED'
    status_code = 400


class OutsideGeofence(TaskError):
    code = 'OUTSIDE_GEOFENCE'
    status_code = 403

    def __init__(self, *, distance_m: float, radius_m: float) -> None:
        super().__init__(
            f'You are {distance_m:.0f} m from the store; actions must happen within {radius_m:.0f} m',
            distance_m=round(distance_m, 1),
            radius_m=radius_m,
        )


class PhotosIncomplete(TaskError):
    code = 'PHOTOS_INCOMPLETE'
    status_code = 400

    def __init__(self, *, uploaded: int, required: int) -> None:
        super().__init__(
            f'{uploaded} of {required} required photos uploaded',
            uploaded=uploaded,
            required=required,
        )


class NotHolder(TaskError):
    code = 'NOT_HOLDER'
    status_code = 403


class InvalidPhoto(TaskError):
    code = 'INVALID_PHOTO'
    status_code = 400


class DuplicateInstanceRace(TaskError):
    # Internal: another caller created the same period's instance first.
    code = 'DUPLICATE_INSTANCE_RACE'
    status_code = 409
