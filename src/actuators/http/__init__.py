from actuators.http.actuator import HTTPActuator, classify_response

__all__ = ["HTTPActuator", "classify_response"]
