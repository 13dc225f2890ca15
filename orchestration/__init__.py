"""Chapter generation orchestrators: single-chapter gate and ranked branches."""
