"""Consulta de endereço por CEP (ViaCEP)"""
import logging
import re
from typing import Dict, Optional
import httpx
from imobcrm.config import settings

logger = logging.getLogger(__name__)


class CepInvalido(ValueError):
    pass


def normalize_cep(cep: str) -> str:
    digits = re.sub(r"\D", "", cep or "")
    if len(digits) != 8:
        raise CepInvalido("CEP deve conter 8 dígitos")
    return digits


async def lookup_cep(
    cep: str,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> Optional[Dict[str, str]]:
    """
    Busca o endereço de um CEP.

    Returns:
        dict com endereco, bairro, cidade e estado, ou None se o CEP não existir
        ou o serviço estiver indisponível.
    """
    digits = normalize_cep(cep)
    try:
        async with httpx.AsyncClient(transport=transport, timeout=10.0) as client:
            response = await client.get(f"{settings.viacep_base_url}/{digits}/json/")
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"Erro ao buscar CEP {digits}: {e}")
        return None

    if data.get("erro"):
        return None

    return {
        "cep": data.get("cep", digits),
        "endereco": data.get("logradouro", ""),
        "bairro": data.get("bairro", ""),
        "cidade": data.get("localidade", ""),
        "estado": data.get("uf", ""),
    }
