#!/usr/bin/env python3

from collections import deque
from typing import Tuple


class PIDController:
    """
    Per-frame PID controller for pixel-error line following.

    Unlike a time-based PID, every update is one camera frame: the integral
    accumulates raw error and the derivative is the frame-to-frame difference.
    """

    def __init__(self, kp: float = 0.2, ki: float = 0.0, kd: float = 0.05,
                 integral_limit: float = 100.0):
        """
        Initialize PID controller.

        Args:
            kp: Proportional gain
            ki: Integral gain (0 disables the integral term)
            kd: Derivative gain
            integral_limit: Integral is clamped to [-limit, limit] (prevents windup)
        """
        self.kp = kp
        self.ki = ki
        self.kd = kd
        self.integral_limit = integral_limit

        # State variables
        self.previous_error = 0.0
        self.integral = 0.0
        self.last_output = 0.0

        # Statistics
        self.error_history = deque(maxlen=100)

    def update(self, error: float) -> float:
        """
        Calculate PID output for this frame's error.

        Args:
            error: Signed pixel error (frame center - line position)

        Returns:
            PID control output
        """
        self.integral = max(-self.integral_limit,
                            min(self.integral_limit, self.integral + error))
        derivative = error - self.previous_error

        output = self.kp * error + self.ki * self.integral + self.kd * derivative

        self.previous_error = error
        self.last_output = output
        self.error_history.append(error)

        return output

    def reset(self):
        """Reset PID controller state."""
        self.previous_error = 0.0
        self.integral = 0.0
        self.last_output = 0.0
        self.error_history.clear()

    def get_components(self, error: float) -> Tuple[float, float, float]:
        """
        Get individual P, I, D components without updating state.
        Useful for debugging and tuning.
        """
        integral = max(-self.integral_limit,
                       min(self.integral_limit, self.integral + error))
        return (self.kp * error,
                self.ki * integral,
                self.kd * (error - self.previous_error))

    def get_stats(self) -> dict:
        """Get controller statistics."""
        if not self.error_history:
            return {
                'avg_error': 0.0,
                'max_error': 0.0,
                'min_error': 0.0,
                'previous_error': self.previous_error,
                'current_integral': self.integral,
                'last_output': self.last_output,
                'sample_count': 0
            }

        return {
            'avg_error': sum(self.error_history) / len(self.error_history),
            'max_error': max(self.error_history),
            'min_error': min(self.error_history),
            'previous_error': self.previous_error,
            'current_integral': self.integral,
            'last_output': self.last_output,
            'sample_count': len(self.error_history)
        }
