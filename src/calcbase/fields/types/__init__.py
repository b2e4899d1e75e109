"""Field type handler implementations."""
