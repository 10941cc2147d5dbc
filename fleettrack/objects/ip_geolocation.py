import logging

import requests

from fleettrack.intelligence.geometry import is_valid_coordinate

logger = logging.getLogger(__name__)

POSTAL_ACCURACY_M = 3000
CITY_ACCURACY_M = 5000
REGION_ACCURACY_M = 25000
COUNTRY_ACCURACY_M = 100000


def ip_accuracy(data):
    """Accuracy in meters from the most specific place level a provider returned"""
    if data.get('postal'):
        return POSTAL_ACCURACY_M
    if data.get('city'):
        return CITY_ACCURACY_M
    if data.get('region') or data.get('region_name'):
        return REGION_ACCURACY_M
    if data.get('country') or data.get('country_name'):
        return COUNTRY_ACCURACY_M
    return CITY_ACCURACY_M


def _fix(lat, lon, data, country=None, ip=None):
    return {
        'latitude': float(lat),
        'longitude': float(lon),
        'accuracy': ip_accuracy(data),
        'city': data.get('city'),
        'country': country if country is not None else data.get('country'),
        'ip': ip if ip is not None else data.get('ip'),
    }


def _parse_ipinfo(data):
    loc = data.get('loc')
    if not loc:
        return None
    lat, lon = loc.split(',', 1)
    return _fix(lat, lon, data)


def _parse_ipapi(data):
    if data.get('error') or data.get('latitude') is None or data.get('longitude') is None:
        return None
    return _fix(data['latitude'], data['longitude'], data, country=data.get('country_name'))


def _parse_extreme_ip(data):
    if data.get('status') not in (None, 'success') or not data.get('lat') or not data.get('lon'):
        return None
    return _fix(data['lat'], data['lon'], data, ip=data.get('query'))


def _parse_geolocation_db(data):
    if data.get('latitude') in (None, '', 'Not found') or data.get('longitude') in (None, '', 'Not found'):
        return None
    return _fix(data['latitude'], data['longitude'], data,
                country=data.get('country_name'), ip=data.get('IPv4'))


PROVIDERS = {
    'ipinfo': ('https://ipinfo.io/json', _parse_ipinfo),
    'ipapi': ('https://ipapi.co/json/', _parse_ipapi),
    'extreme-ip-lookup': ('https://extreme-ip-lookup.com/json/', _parse_extreme_ip),
    'geolocation-db': ('https://geolocation-db.com/json/', _parse_geolocation_db),
}


def lookup(provider, session=None, timeout=3.0):
    """Query a single provider. Returns a fix dict or None when it has no usable answer."""
    url, parse = PROVIDERS[provider]
    http = session or requests

    try:
        response = http.get(url, headers={'Accept': 'application/json'}, timeout=timeout)
        response.raise_for_status()
        fix = parse(response.json())
    except (requests.RequestException, ValueError, KeyError) as e:
        logger.info("IP provider %s failed: %s", provider, e)
        return None

    if fix is None:
        logger.info("IP provider %s returned no coordinates", provider)
        return None
    if not is_valid_coordinate(fix['latitude'], fix['longitude']):
        logger.info("IP provider %s returned an invalid coordinate", provider)
        return None

    fix['provider'] = provider
    return fix


class IpGeolocator:
    def __init__(self, providers=None, timeout=3.0, session=None):
        providers = list(providers) if providers is not None else list(PROVIDERS)
        unknown = [p for p in providers if p not in PROVIDERS]
        if unknown:
            raise ValueError(f"Unknown IP geolocation providers: {', '.join(unknown)}")
        self.providers = providers
        self.timeout = timeout
        self.session = session or requests.Session()

    def locate(self):
        for provider in self.providers:
            fix = lookup(provider, session=self.session, timeout=self.timeout)
            if fix:
                return fix
        return None
