"""
RMBG-2.0 background removal service package.

Exposes reusable primitives for acquiring ONNX weights, managing the loaded
inference session, preprocessing images, compositing the predicted mask as
an alpha channel, and serving the FastAPI application.
"""

__version__ = "1.0.0"
