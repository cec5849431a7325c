from raypose.api.absolute_pose import PoseHypothesis, UpnpResult, upnp

__all__ = [
    "PoseHypothesis",
    "UpnpResult",
    "upnp",
]
