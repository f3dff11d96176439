"""
RMBG background removal service package.

Exposes reusable primitives for loading the segmentation model, fitting
images onto the inference canvas, normalizing masks, compositing alpha, and
serving the FastAPI application.
"""
