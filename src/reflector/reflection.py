"""Specular reflection about a surface normal.

Written with array methods and operators only, so the result keeps the type
and precision of its inputs: float64 numpy vectors for the per-ray bounce in
:class:`reflector.rays.RayState`, JAX arrays under ``jax.jit`` / ``jax.vmap``
for stacked ``(N, 2)`` batches.
"""

import jax.numpy as jnp


def specular_reflection(incident_dir: jnp.ndarray, normal: jnp.ndarray) -> jnp.ndarray:
    """Mirror a direction about a surface normal: ``d' = d - 2 (d.n) n``.

    Parameters
    ----------
    incident_dir : (..., 2) array
        Unit direction of the incoming ray.
    normal : (..., 2) array
        Unit surface normal.  Its orientation does not matter: flipping the
        sign of *n* leaves the reflected direction unchanged.

    Returns
    -------
    reflected_dir : (..., 2) array
        Unit reflected direction, of the same array type as the inputs.
        Renormalised to absorb floating-point drift accumulated over many
        bounces.
    """
    dot = (incident_dir * normal).sum(axis=-1, keepdims=True)
    reflected = incident_dir - 2.0 * dot * normal
    length = ((reflected * reflected).sum(axis=-1, keepdims=True)) ** 0.5
    return reflected / length
