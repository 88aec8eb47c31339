from punch_relay.services.pipeline import AttendancePipeline

__all__ = ["AttendancePipeline"]
