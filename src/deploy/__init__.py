"""Build a project inside its sandbox and publish the output to the deployment plane."""
