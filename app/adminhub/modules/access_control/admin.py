from flask import Blueprint

from app.adminhub.api import register_crud
from app.adminhub.models import Role
from app.adminhub.modules.access_control import service
from app.adminhub.modules.access_control.models import Feature, FeatureCategory, Policy, RoleFeature, RouteFeature
from app.adminhub.utils import parse_bool

bp = Blueprint("access_control", __name__)

register_crud(
    bp,
    "/roles",
    Role,
    fields=service.ROLE_FIELDS,
    validate=service.validate_role,
    create=service.create_role,
    update=service.update_role,
    delete=service.delete_role,
    filters={"grants_all": parse_bool},
    order_by=Role.name,
)

register_crud(
    bp,
    "/feature-categories",
    FeatureCategory,
    fields=service.CATEGORY_FIELDS,
    validate=service.validate_category,
    create=service.create_category,
    update=service.update_category,
    delete=service.delete_record,
    filters={"is_active": parse_bool},
    order_by=FeatureCategory.sort_order,
)

register_crud(
    bp,
    "/features",
    Feature,
    fields=service.FEATURE_FIELDS,
    validate=service.validate_feature,
    create=service.create_feature,
    update=service.update_feature,
    delete=service.delete_feature,
    filters={"category_id": int},
    order_by=Feature.name,
)

register_crud(
    bp,
    "/role-features",
    RoleFeature,
    fields=service.ROLE_FEATURE_FIELDS,
    validate=service.validate_role_feature,
    create=service.create_role_feature,
    update=service.update_role_feature,
    delete=service.delete_record,
    filters={"role_id": int, "feature_id": int},
)

register_crud(
    bp,
    "/policies",
    Policy,
    fields=service.POLICY_FIELDS,
    validate=service.validate_policy,
    create=service.create_policy,
    update=service.update_policy,
    delete=service.delete_record,
    filters={"feature_id": int},
)

register_crud(
    bp,
    "/route-features",
    RouteFeature,
    fields=service.ROUTE_FIELDS,
    validate=service.validate_route_feature,
    create=service.create_route_feature,
    update=service.update_route_feature,
    delete=service.delete_record,
    filters={"feature_id": int},
    order_by=RouteFeature.path,
)
