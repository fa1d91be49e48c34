"""
Synthetic data for the integrated population model.

**Usage:**
```python
from salmon_ipm.simulation import PopulationSimulator

sim = PopulationSimulator(age_min=3, age_max=6, n_yrs=15)
data = sim.simulate(alpha=2.0, beta=1e-4, random_seed=1)
```
"""

from salmon_ipm.simulation.simulator import PopulationSimulator, SimulatedData

__all__ = ["PopulationSimulator", "SimulatedData"]
