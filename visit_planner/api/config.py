# visit_planner/api/config.py
"""Configuration management for the visit planner API."""
import os
from dotenv import load_dotenv

load_dotenv()


def get_google_maps_config():
    """Get Google Maps configuration."""
    return {
        "api_key": os.getenv("GOOGLE_MAPS_API_KEY", ""),
        "language": os.getenv("GOOGLE_MAPS_LANGUAGE", "es"),
        "region": os.getenv("GOOGLE_MAPS_REGION", "es"),
        "timeout": float(os.getenv("GOOGLE_MAPS_TIMEOUT_SECONDS", "8")),
    }


def get_nominatim_config():
    """Get configuration for the OpenStreetMap Nominatim fallback geocoder."""
    return {
        "base_url": os.getenv("NOMINATIM_BASE_URL", "https://nominatim.openstreetmap.org"),
        "email": os.getenv("NOMINATIM_EMAIL", ""),
        "user_agent": os.getenv("NOMINATIM_USER_AGENT", "visit-planner/1.0"),
        "accept_language": os.getenv("NOMINATIM_ACCEPT_LANGUAGE", "es,en;q=0.9"),
    }


def get_geocoding_config():
    """Get geocoder tuning (timeouts and batch pacing)."""
    return {
        "timeout_seconds": float(os.getenv("GEOCODE_TIMEOUT_SECONDS", "8")),
        # Nominatim's usage policy allows roughly one request per second per
        # client; batches are paced with a fixed delay between network lookups.
        "batch_delay_seconds": float(os.getenv("GEOCODE_BATCH_DELAY_SECONDS", "0.35")),
        "default_country": os.getenv("GEOCODE_DEFAULT_COUNTRY", "España"),
    }


def get_routing_config():
    """Get distance matrix configuration."""
    return {
        "mode": os.getenv("ROUTING_TRAVEL_MODE", "driving"),
        "timeout_seconds": float(os.getenv("ROUTING_TIMEOUT_SECONDS", "10")),
    }


def get_storage_config():
    """Get local (client-side) persistence configuration."""
    return {
        "data_dir": os.getenv("PLANNER_DATA_DIR", os.path.join(os.getcwd(), ".planner-data")),
    }


def get_persistence_config():
    """Get remote itinerary store configuration.

    An empty base URL means the deployment has no remote store; the
    repository then works entirely from the local store.
    """
    return {
        "base_url": os.getenv("ITINERARY_STORE_URL", "").rstrip("/"),
        "token": os.getenv("ITINERARY_STORE_TOKEN", ""),
        "timeout": float(os.getenv("ITINERARY_STORE_TIMEOUT_SECONDS", "8")),
    }


def get_location_directory_config():
    """Get configuration for the external customer directory."""
    return {
        "base_url": os.getenv("LOCATION_DIRECTORY_URL", "").rstrip("/"),
        "token": os.getenv("LOCATION_DIRECTORY_TOKEN", ""),
        "timeout": float(os.getenv("LOCATION_DIRECTORY_TIMEOUT_SECONDS", "8")),
    }


def get_port():
    """Get port configuration."""
    return int(os.getenv("PORT", 3000))
