"""Example usage of the dgrecon Python API.

Requires the TINKER programs (protein, distgeom, xyzpdb, pdbxyz,
minimize, analyze) and a force-field parameter file.  The parallel run
additionally needs a Grid Engine installation (qsub/qstat/qacct/qdel).
"""

import threading

from dgrecon import (
    Reconstructor,
    ReconstructionError,
    load_restraints,
    load_settings,
)
from dgrecon._progress import CallbackProgress
from dgrecon.restraints import DistanceRestraint, RestraintSpec

# ---------------------------------------------------------------
# 1. Settings
# ---------------------------------------------------------------

# YAML file plus dotlist overrides; ${env:VAR} interpolation is allowed
settings = load_settings(
    "settings.yaml",
    overrides=["reconstruction.n_models=10", "cluster.timeout=3600"],
)
settings.engine.validate()

# ---------------------------------------------------------------
# 2. Restraints
# ---------------------------------------------------------------

sequence = "MKTAYIAKQRQISFVKSHFSRQ"

# From a YAML file ...
spec = load_restraints("restraints.yaml", sequence)

# ... or built directly
spec = RestraintSpec(
    sequence=sequence,
    distances=(
        DistanceRestraint(2, 40, 3.0, 8.0),
        DistanceRestraint(12, 95, 4.0, 9.0),
    ),
    trans_omega=True,
)

# ---------------------------------------------------------------
# 3. Local reconstruction
# ---------------------------------------------------------------

with Reconstructor(settings) as reconstructor:
    result = reconstructor.reconstruct(spec, "out", "model", n_models=5)
    print(f"Best model: {result.best_model_path}")
    for model in range(1, result.n_models + 1):
        print(f"  model {model}: {result.bound_violations(model)} violations")
    # index 0 is unused so columns line up with model numbers
    print(result.column("rms_bound_viol")[1:])

# ---------------------------------------------------------------
# 4. One cluster job per model, with progress and cancellation
# ---------------------------------------------------------------

progress = CallbackProgress(
    on_stage=lambda stage: print(f"stage {stage.value}"),
    on_models=lambda n, total: print(f"{n}/{total} models"),
)
reconstructor = Reconstructor(settings, progress=progress)

# stop() may be called from any thread, e.g. a GUI button handler
timer = threading.Timer(1800, reconstructor.stop)
timer.start()
try:
    result = reconstructor.reconstruct(
        spec, "out", "cluster_run", n_models=20, parallel=True
    )
except ReconstructionError as exc:
    print(f"Reconstruction failed in stage {exc.stage}: {exc}")
finally:
    timer.cancel()

# ---------------------------------------------------------------
# 5. Convenience entry points
# ---------------------------------------------------------------

with Reconstructor(settings) as reconstructor:
    # temporary directory and base name; removed on close()
    best = reconstructor.reconstruct_best(spec, n_models=3)
    print(f"Energy of best model: {reconstructor.compute_energy(best):.2f}")

    final = reconstructor.minimize("out/model.001.pdb", rms_gradient=0.1)
    print(f"Minimized energy: {final:.2f} kcal/mol")
