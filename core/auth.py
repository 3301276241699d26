"""
身份由上游网关完成认证后通过请求头透传，本服务只读取：
  X-Tenant-Id      当前租户
  X-Operator       操作人（用于审计字段）
  X-Operator-Role  admin / user
"""

from fastapi import Header, HTTPException, status


async def get_current_user(
    x_tenant_id: str = Header(default=""),
    x_operator: str = Header(default=""),
    x_operator_role: str = Header(default="user"),
) -> dict:
    tenant_id = str(x_tenant_id or "").strip()
    role = str(x_operator_role or "user").strip().lower()
    if not tenant_id and role != "admin":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="缺少租户身份")
    return {
        "tenant_id": tenant_id,
        "username": str(x_operator or "").strip() or tenant_id,
        "role": role,
    }


def require_admin(current_user: dict) -> None:
    if current_user.get("role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="无权限执行此操作")


def require_tenant(current_user: dict) -> str:
    tenant_id = current_user.get("tenant_id") or ""
    if not tenant_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="缺少租户身份")
    return tenant_id
